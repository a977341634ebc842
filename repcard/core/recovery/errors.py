"""
Error Classification

Maps any failure raised while submitting, confirming or reading a
transaction to a ClassifiedError: a taxonomy kind, user-facing message and
action, and a retryable verdict used by the backoff retrier.

Wallets, RPC nodes and HTTP transports report failures in different
shapes, so message extraction walks a fixed list of named rules, then one
level of nested cause. Classification is a first-match-wins table.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Collection, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import httpx


logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Top-level taxonomy for transaction failures."""

    USER_CANCELLED = "user_cancelled"
    NETWORK_OR_TIMEOUT = "network_or_timeout"
    NONCE_CONFLICT = "nonce_conflict"
    RATE_LIMITED = "rate_limited"
    GAS_ESTIMATION_FAILED = "gas_estimation_failed"
    BUSINESS_RULE_REJECTED = "business_rule_rejected"
    UNKNOWN = "unknown"


class BusinessRule(str, Enum):
    """Contract-level rejections. None of these are retryable."""

    ALREADY_CLAIMED = "already_claimed"
    PAUSED = "paused"
    SUPPLY_EXHAUSTED = "supply_exhausted"
    UNAUTHORIZED = "unauthorized"
    INVALID_SIGNATURE_OR_NONCE = "invalid_signature_or_nonce"
    PROFILE_EXISTS = "profile_exists"
    NO_PROFILE = "no_profile"
    TEMPLATE_EXISTS = "template_exists"
    INVALID_TIER = "invalid_tier"
    NOT_ELIGIBLE = "not_eligible"
    CLAIM_WINDOW_CLOSED = "claim_window_closed"
    REPUTATION_NOT_SET = "reputation_not_set"
    WRONG_CHAIN = "wrong_chain"
    EXECUTION_REVERTED = "execution_reverted"


@dataclass(frozen=True)
class ClassifiedError:
    """A failure mapped onto the taxonomy, ready for display."""

    message: str
    code: str
    user_action: str
    retryable: bool
    kind: ErrorKind = ErrorKind.UNKNOWN
    sub_kind: Optional[BusinessRule] = None
    detail: str = ""  # raw extracted failure text

    @property
    def is_user_cancelled(self) -> bool:
        return self.kind == ErrorKind.USER_CANCELLED

    @property
    def should_notify(self) -> bool:
        """Whether a UI should surface this as an error toast."""
        return not self.is_user_cancelled

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["sub_kind"] = self.sub_kind.value if self.sub_kind else None
        return data


# Ledger-side failures

class LedgerError(Exception):
    """Base class for failures reported by the ledger RPC service."""


class RPCError(LedgerError):
    """JSON-RPC error object returned by a node or wallet endpoint."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class ConfirmationTimeoutError(LedgerError):
    """No receipt arrived within the confirmation window."""

    def __init__(self, message: str = "Timed out waiting for receipt", tx_hash: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tx_hash = tx_hash


class TransactionRevertedError(LedgerError):
    """The transaction was mined with a failing status."""

    def __init__(
        self,
        message: str = "Transaction reverted",
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.tx_hash = tx_hash
        self.reason = reason


class LogDecodeError(LedgerError):
    """A raw log does not match the event schema it was decoded against."""


class RetryCancelledError(Exception):
    """A caller cancelled the retry loop between physical attempts."""

    def __init__(self, message: str = "Retry loop cancelled", attempts: int = 0):
        super().__init__(message)
        self.message = message
        self.attempts = attempts


class TransactionFlowError(Exception):
    """
    Terminal failure of a transaction flow.

    Carries the classification of the last physical attempt, how many
    attempts were made, and every transaction hash that was obtained along
    the way (more than one means the ledger may hold duplicates).
    """

    def __init__(
        self,
        classified: ClassifiedError,
        attempts: int = 1,
        tx_hashes: Iterable[str] = (),
    ):
        super().__init__(classified.message)
        self.classified = classified
        self.attempts = attempts
        self.tx_hashes: Tuple[str, ...] = tuple(tx_hashes)

    @property
    def is_user_cancelled(self) -> bool:
        return self.classified.is_user_cancelled


# Message extraction

def _field(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _meta_messages(source: Any) -> Optional[str]:
    meta = _field(source, "meta_messages") or _field(source, "metaMessages")
    if isinstance(meta, (list, tuple)):
        joined = " ".join(m for m in meta if isinstance(m, str))
        return _text(joined)
    return None


@dataclass(frozen=True)
class ExtractionRule:
    """One named way of reading a message out of a failure."""

    name: str
    extract: Callable[[Any], Optional[str]]


MESSAGE_RULES: Tuple[ExtractionRule, ...] = (
    ExtractionRule("plain_string", lambda f: _text(f)),
    ExtractionRule(
        "short_message",
        lambda f: _text(_field(f, "short_message")) or _text(_field(f, "shortMessage")),
    ),
    ExtractionRule("details", lambda f: _text(_field(f, "details"))),
    ExtractionRule("message", lambda f: _text(_field(f, "message"))),
    ExtractionRule(
        "exception_text",
        lambda f: _text(str(f)) if isinstance(f, BaseException) else None,
    ),
    ExtractionRule("reason", lambda f: _text(_field(f, "reason"))),
    ExtractionRule("data_message", lambda f: _text(_field(_field(f, "data"), "message"))),
    ExtractionRule("error_message", lambda f: _text(_field(_field(f, "error"), "message"))),
    ExtractionRule("meta_messages", _meta_messages),
)


def _cause_of(failure: Any) -> Any:
    if isinstance(failure, BaseException) and failure.__cause__ is not None:
        return failure.__cause__
    if isinstance(failure, (str, bytes)):
        return None
    return _field(failure, "cause")


def _first_message(source: Any) -> Optional[str]:
    for rule in MESSAGE_RULES:
        text = rule.extract(source)
        if text:
            return text
    return None


def extract_message(failure: Any) -> str:
    """Best-effort message for a failure, looking one cause deep."""
    for source in (failure, _cause_of(failure)):
        if source is None:
            continue
        text = _first_message(source)
        if text:
            return text
    return ""


def _codes_of(source: Any) -> List[str]:
    codes = []
    for candidate in (_field(source, "code"), _field(_field(source, "error"), "code")):
        if isinstance(candidate, (int, str)) and not isinstance(candidate, bool):
            codes.append(str(candidate).upper())
    return codes


@dataclass(frozen=True)
class FailureView:
    """Normalized facts about a failure that classification rules match on."""

    chain: Tuple[Any, ...]
    detail: str
    text: str
    codes: FrozenSet[str]
    http_status: Optional[int]

    @classmethod
    def of(cls, failure: Any) -> "FailureView":
        cause = _cause_of(failure)
        chain = tuple(s for s in (failure, cause) if s is not None)

        texts = [t for t in (_first_message(s) for s in chain) if t]
        codes: List[str] = []
        http_status = None
        for source in chain:
            codes.extend(_codes_of(source))
            if isinstance(source, httpx.HTTPStatusError):
                http_status = source.response.status_code

        return cls(
            chain=chain,
            detail=texts[0] if texts else "",
            text=" | ".join(texts).lower(),
            codes=frozenset(codes),
            http_status=http_status,
        )

    def mentions(self, patterns: Collection[str]) -> bool:
        return any(p in self.text for p in patterns)

    def has_code(self, *codes: Any) -> bool:
        return any(str(c).upper() in self.codes for c in codes)

    def is_instance(self, types: Any) -> bool:
        return any(isinstance(s, types) for s in self.chain)


# Classification table

USER_REJECTION_CODES = (4001, "ACTION_REJECTED")
USER_REJECTION_PATTERNS = (
    "user rejected",
    "user denied",
    "user cancelled",
    "user canceled",
    "rejected the request",
)


def _user_cancelled(view: FailureView) -> Optional[ClassifiedError]:
    if view.is_instance(RetryCancelledError):
        return ClassifiedError(
            message="Transaction retry was cancelled.",
            code="RETRY_CANCELLED",
            user_action="You can try again when ready.",
            retryable=False,
            kind=ErrorKind.USER_CANCELLED,
            detail=view.detail,
        )
    if view.has_code(*USER_REJECTION_CODES) or view.mentions(USER_REJECTION_PATTERNS):
        return ClassifiedError(
            message="Transaction was rejected.",
            code="USER_REJECTED",
            user_action="You can try again when ready.",
            retryable=False,
            kind=ErrorKind.USER_CANCELLED,
            detail=view.detail,
        )
    return None


@dataclass(frozen=True)
class BusinessRulePattern:
    """Substring patterns (lowercase) for one contract rejection."""

    sub_kind: BusinessRule
    code: str
    patterns: Tuple[str, ...]
    message: str
    user_action: str


BUSINESS_RULES: Tuple[BusinessRulePattern, ...] = (
    BusinessRulePattern(
        BusinessRule.ALREADY_CLAIMED,
        "ALREADY_CLAIMED",
        ("already claimed", "alreadyclaimed"),
        "You have already claimed this card.",
        "Check your profile to see your existing cards.",
    ),
    BusinessRulePattern(
        BusinessRule.INVALID_SIGNATURE_OR_NONCE,
        "INVALID_SIGNATURE",
        ("invalid signature", "invalidsignature"),
        "The claim link signature is invalid.",
        "Please request a new claim link from the issuer.",
    ),
    BusinessRulePattern(
        BusinessRule.INVALID_SIGNATURE_OR_NONCE,
        "NONCE_USED",
        ("nonce used", "nonceused"),
        "This claim link has already been used.",
        "Please request a new claim link from the issuer.",
    ),
    BusinessRulePattern(
        BusinessRule.PAUSED,
        "TEMPLATE_PAUSED",
        ("template paused", "templatepaused", "collectiblepaused", "enforcedpause", "pausable: paused"),
        "This template is currently paused.",
        "Please try again later or contact the issuer.",
    ),
    BusinessRulePattern(
        BusinessRule.SUPPLY_EXHAUSTED,
        "MAX_SUPPLY_REACHED",
        ("max supply", "maxsupply", "supply exhausted"),
        "This template has reached its maximum supply.",
        "No more cards can be issued from this template.",
    ),
    BusinessRulePattern(
        BusinessRule.UNAUTHORIZED,
        "UNAUTHORIZED_ISSUER",
        ("only issuer", "onlyissuer", "unauthorizedissuer"),
        "You do not have permission to issue cards from this template.",
        "Only the template issuer can perform this action.",
    ),
    BusinessRulePattern(
        BusinessRule.UNAUTHORIZED,
        "UNAUTHORIZED",
        ("accesscontrol", "unauthorized", "missing role", "not authorized", "caller is not the owner"),
        "You do not have permission to perform this action.",
        "Please contact an administrator if you believe this is an error.",
    ),
    BusinessRulePattern(
        BusinessRule.PROFILE_EXISTS,
        "PROFILE_EXISTS",
        ("profile exists", "profileexists"),
        "You already have a profile.",
        "Open your existing profile instead.",
    ),
    BusinessRulePattern(
        BusinessRule.NO_PROFILE,
        "NO_PROFILE",
        ("no profile", "noprofile", "profilenotfound", "profile not found"),
        "You need to create a profile first.",
        "Please create your profile to continue.",
    ),
    BusinessRulePattern(
        BusinessRule.TEMPLATE_EXISTS,
        "TEMPLATE_EXISTS",
        ("template exists", "templateexists"),
        "A template with this ID already exists.",
        "Please use a different template ID.",
    ),
    BusinessRulePattern(
        BusinessRule.INVALID_TIER,
        "INVALID_TIER",
        ("invalid tier", "invalidtier"),
        "The tier value must be between 1 and 3.",
        "Please select a valid tier (1, 2, or 3).",
    ),
    BusinessRulePattern(
        BusinessRule.NOT_ELIGIBLE,
        "NOT_ELIGIBLE",
        ("noteligible", "not eligible"),
        "You are not eligible to claim this collectible.",
        "Check the eligibility requirements with the issuer.",
    ),
    BusinessRulePattern(
        BusinessRule.CLAIM_WINDOW_CLOSED,
        "CLAIM_WINDOW_CLOSED",
        ("claimperiodnotstarted", "claimperiodended", "collectiblenotactive"),
        "This collectible cannot be claimed right now.",
        "Check the claim window and try again during it.",
    ),
    BusinessRulePattern(
        BusinessRule.REPUTATION_NOT_SET,
        "REPUTATION_NOT_SET",
        ("reputation contract not set", "reputationnotset"),
        "The reputation contract has not been configured.",
        "Please contact an administrator.",
    ),
    BusinessRulePattern(
        BusinessRule.WRONG_CHAIN,
        "WRONG_CHAIN",
        ("chain mismatch", "wrong chain"),
        "Wrong network selected.",
        "Please switch to the configured network.",
    ),
)

REVERT_PATTERNS = ("execution reverted", "transaction may fail")


def _business_rule(view: FailureView) -> Optional[ClassifiedError]:
    for rule in BUSINESS_RULES:
        if view.mentions(rule.patterns):
            return ClassifiedError(
                message=rule.message,
                code=rule.code,
                user_action=rule.user_action,
                retryable=False,
                kind=ErrorKind.BUSINESS_RULE_REJECTED,
                sub_kind=rule.sub_kind,
                detail=view.detail,
            )

    if view.is_instance(TransactionRevertedError) or view.mentions(REVERT_PATTERNS):
        return ClassifiedError(
            message="Transaction is likely to fail.",
            code="EXECUTION_REVERTED",
            user_action=(
                "Check transaction parameters and try again. "
                "The contract may have rejected this operation."
            ),
            retryable=False,
            kind=ErrorKind.BUSINESS_RULE_REJECTED,
            sub_kind=BusinessRule.EXECUTION_REVERTED,
            detail=view.detail,
        )
    return None


def _gas(view: FailureView) -> Optional[ClassifiedError]:
    def gas_error(message: str, code: str, action: str, retryable: bool) -> ClassifiedError:
        return ClassifiedError(
            message=message,
            code=code,
            user_action=action,
            retryable=retryable,
            kind=ErrorKind.GAS_ESTIMATION_FAILED,
            detail=view.detail,
        )

    insufficient = view.mentions(("insufficient funds", "insufficientfunds"))
    is_gas = "gas" in view.text or view.has_code("UNPREDICTABLE_GAS_LIMIT")

    if insufficient:
        if is_gas:
            return gas_error(
                "Insufficient funds to pay for gas.",
                "INSUFFICIENT_FUNDS_FOR_GAS",
                "Please add more funds to your wallet to cover gas fees.",
                False,
            )
        return gas_error(
            "Insufficient funds to complete this transaction.",
            "INSUFFICIENT_FUNDS",
            "Please add more funds to your wallet.",
            False,
        )

    if not is_gas:
        return None

    # An estimation failure carrying a revert reason reports the reason
    rejected = _business_rule(view)
    if rejected is not None:
        return rejected

    if view.mentions(("intrinsic gas too low", "gas too low")):
        return gas_error(
            "Gas limit is too low for this transaction.",
            "GAS_TOO_LOW",
            "Try increasing the gas limit in your wallet settings.",
            True,
        )
    if view.mentions(("out of gas", "gas required exceeds")):
        return gas_error(
            "Transaction requires more gas than available.",
            "OUT_OF_GAS",
            "Please try again with a higher gas limit.",
            True,
        )
    if view.has_code("UNPREDICTABLE_GAS_LIMIT"):
        return gas_error(
            "Cannot estimate gas for this transaction.",
            "UNPREDICTABLE_GAS_LIMIT",
            "The transaction may fail. Please verify all parameters are correct.",
            False,
        )
    return gas_error(
        "Gas estimation failed.",
        "GAS_ESTIMATION_FAILED",
        "Please check your wallet balance and try again.",
        True,
    )


NETWORK_PATTERNS = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "fetch failed",
    "econnrefused",
)


def _network(view: FailureView) -> Optional[ClassifiedError]:
    transport_failure = view.is_instance(
        (httpx.TransportError, ConfirmationTimeoutError, asyncio.TimeoutError, ConnectionError)
    )
    server_failure = view.http_status is not None and view.http_status >= 500
    if (
        transport_failure
        or server_failure
        or view.has_code("NETWORK_ERROR", "TIMEOUT")
        or view.mentions(NETWORK_PATTERNS)
    ):
        return ClassifiedError(
            message="Network connection issue.",
            code="NETWORK_ERROR",
            user_action="Please check your connection and try again.",
            retryable=True,
            kind=ErrorKind.NETWORK_OR_TIMEOUT,
            detail=view.detail,
        )
    return None


NONCE_PATTERNS = ("nonce too low", "nonce too high", "replacement transaction", "already known")


def _nonce(view: FailureView) -> Optional[ClassifiedError]:
    if view.mentions(NONCE_PATTERNS):
        return ClassifiedError(
            message="Transaction nonce conflict.",
            code="NONCE_ERROR",
            user_action="Please wait a moment and try again.",
            retryable=True,
            kind=ErrorKind.NONCE_CONFLICT,
            detail=view.detail,
        )
    return None


RATE_LIMIT_PATTERNS = (
    "rate limit",
    "too many requests",
    "throttl",
    "quota exceeded",
    "exceeded its compute units",
)


def _rate_limited(view: FailureView) -> Optional[ClassifiedError]:
    if view.http_status == 429 or view.has_code(429, -32005) or view.mentions(RATE_LIMIT_PATTERNS):
        return ClassifiedError(
            message="Too many requests. Please slow down.",
            code="RATE_LIMIT",
            user_action="Wait a moment and try again.",
            retryable=True,
            kind=ErrorKind.RATE_LIMITED,
            detail=view.detail,
        )
    return None


ClassificationRule = Callable[[FailureView], Optional[ClassifiedError]]

CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    _user_cancelled,
    _gas,
    _network,
    _nonce,
    _rate_limited,
    _business_rule,
)


def _unknown(detail: str) -> ClassifiedError:
    return ClassifiedError(
        message=detail or "An unexpected error occurred.",
        code="UNKNOWN_ERROR",
        user_action="Please try again or contact support if the issue persists.",
        retryable=True,
        kind=ErrorKind.UNKNOWN,
        detail=detail,
    )


def classify_error(failure: Any) -> ClassifiedError:
    """
    Classify a failure of any shape.

    Never raises: a failure that cannot be inspected classifies as the
    retryable unknown kind.
    """
    if isinstance(failure, TransactionFlowError):
        return failure.classified

    try:
        view = FailureView.of(failure)
        for rule in CLASSIFICATION_RULES:
            classified = rule(view)
            if classified is not None:
                return classified
        return _unknown(view.detail)
    except Exception:
        return _unknown("")


def is_retryable(failure: Any) -> bool:
    return classify_error(failure).retryable


def is_user_rejection(failure: Any) -> bool:
    return classify_error(failure).is_user_cancelled


def log_classified_error(failure: Any, context: Optional[str] = None) -> ClassifiedError:
    """Log a failure with its classification and return the classification."""
    classified = classify_error(failure)
    prefix = f"[{context}] " if context else ""
    level = logging.INFO if classified.is_user_cancelled else logging.WARNING
    logger.log(
        level,
        f"{prefix}{classified.kind.value}/{classified.code}: {classified.detail or classified.message} "
        f"(retryable={classified.retryable})",
    )
    return classified
