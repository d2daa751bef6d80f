"""
Submission Error Classifier

Turns whatever the outbound API, LHDN, or the network layer throws at us into
one fixed, immutable shape and assigns it an actionable category.

Provides:
- normalize(): accepts plain strings, {message}, {code, message, details},
  {error: {...}}, completion payloads, exceptions and already-normalized
  values; never raises
- classify(): ordered rule table, first match wins
- Static per-category profiles (title, friendly message, remediation steps)

Rule order matters because one message can match several rules, e.g.
"Duplicate submission rejected: TIN mismatch" is a TIN problem first.
"""
import json
import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


GENERIC_USER_MESSAGE = "An unexpected error occurred during submission."
DEFAULT_ERROR_CODE = "UNKNOWN_ERROR"

_MAX_UNWRAP_DEPTH = 5


class ErrorCategory(str, Enum):
    """Actionable error categories surfaced to the user."""
    TIN_MISMATCH = "TIN_MISMATCH"
    STATE_CODE_INVALID = "STATE_CODE_INVALID"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ISSUE = "NETWORK_ISSUE"
    PRE_SUBMISSION_VALIDATION = "PRE_SUBMISSION_VALIDATION"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ErrorDetail:
    """One entry of an LHDN validation `details` array."""
    message: str = ""
    code: Optional[str] = None
    target: Optional[str] = None
    property_name: Optional[str] = None
    property_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "target": self.target,
            "propertyName": self.property_name,
            "propertyPath": self.property_path,
        }


@dataclass(frozen=True)
class NormalizedError:
    """
    Error payload reshaped into one fixed schema.

    Immutable and hashable; derived once per raw error.
    """
    error_code: str
    original_message: str
    user_message: str
    guidance: Tuple[str, ...]
    category: ErrorCategory
    field_description: Optional[str] = None
    details: Tuple[ErrorDetail, ...] = ()
    status_code: Optional[int] = None

    @property
    def reason(self) -> str:
        """Short backend reason used in per-item failure lines."""
        return self.original_message or self.user_message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase wire shape."""
        return {
            "errorCode": self.error_code,
            "originalMessage": self.original_message,
            "userMessage": self.user_message,
            "guidance": list(self.guidance),
            "fieldDescription": self.field_description,
            "category": self.category.value,
            "details": [detail.to_dict() for detail in self.details],
            "statusCode": self.status_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedError":
        """Rebuild a value previously produced by to_dict()."""
        return cls(
            error_code=str(data["errorCode"]),
            original_message=str(data.get("originalMessage") or ""),
            user_message=str(data["userMessage"]),
            guidance=tuple(str(step) for step in data.get("guidance") or ()),
            category=ErrorCategory(data["category"]),
            field_description=data.get("fieldDescription"),
            details=tuple(_parse_detail(detail) for detail in data.get("details") or ()),
            status_code=_as_int(data.get("statusCode")),
        )


@dataclass(frozen=True)
class CategoryProfile:
    """Static presentation data for one error category."""
    category: ErrorCategory
    title: str
    user_message: str
    guidance: Tuple[str, ...]


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the ordered rule table."""
    name: str
    category: ErrorCategory
    matches: Callable[[NormalizedError], bool]


CATEGORY_PROFILES: Dict[ErrorCategory, CategoryProfile] = {
    ErrorCategory.TIN_MISMATCH: CategoryProfile(
        category=ErrorCategory.TIN_MISMATCH,
        title="Validation Error: TIN mismatch",
        user_message="The supplier TIN in the document does not match the authenticated TIN.",
        guidance=(
            "Ensure the AccountingSupplierParty TIN matches your configured/company TIN.",
            "If acting as an intermediary, configure onbehalfof correctly and use the right token.",
        ),
    ),
    ErrorCategory.STATE_CODE_INVALID: CategoryProfile(
        category=ErrorCategory.STATE_CODE_INVALID,
        title="Validation Error: State Code",
        user_message="State must be the official 2-digit code (e.g., Kuala Lumpur = 14).",
        guidance=(
            "Use official state codes: https://sdk.myinvois.hasil.gov.my/codes/state-codes/",
            "Update your Excel column that maps to CountrySubentityCode to use the code.",
        ),
    ),
    ErrorCategory.DUPLICATE_SUBMISSION: CategoryProfile(
        category=ErrorCategory.DUPLICATE_SUBMISSION,
        title="Duplicate Submission",
        user_message="LHDN reports this document was already submitted.",
        guidance=(
            "Check if this invoice was previously submitted.",
            "If needed, cancel/void the earlier document per LHDN guidelines.",
        ),
    ),
    ErrorCategory.RATE_LIMITED: CategoryProfile(
        category=ErrorCategory.RATE_LIMITED,
        title="Rate Limited",
        user_message="Too many requests in a short time. Please try again shortly.",
        guidance=(
            "Wait for Retry-After seconds and retry.",
        ),
    ),
    ErrorCategory.NETWORK_ISSUE: CategoryProfile(
        category=ErrorCategory.NETWORK_ISSUE,
        title="Network Issue",
        user_message="We had trouble contacting LHDN. Please try again.",
        guidance=(
            "Check your internet connection and try again.",
            "Check if the document was actually submitted before resubmitting.",
        ),
    ),
    ErrorCategory.PRE_SUBMISSION_VALIDATION: CategoryProfile(
        category=ErrorCategory.PRE_SUBMISSION_VALIDATION,
        title="Validation Needed",
        user_message=(
            "Some details need correction before we can submit. "
            "No data was sent to LHDN yet."
        ),
        guidance=(
            "Review the highlighted issues and correct the Excel data.",
            "Use Search TIN to verify Buyer TIN where applicable.",
            "Re-upload the corrected file and submit again.",
        ),
    ),
    ErrorCategory.UNKNOWN: CategoryProfile(
        category=ErrorCategory.UNKNOWN,
        title="Submission Error",
        user_message=GENERIC_USER_MESSAGE,
        guidance=(
            "Try the submission again.",
            "If the problem persists, contact support with the technical details.",
        ),
    ),
}


# Field names for LHDN validation codes, used when no TIN could be extracted
LHDN_CODE_FIELDS: Dict[str, str] = {
    "CF321": "Issue Date",
    "CF364": "Item Classification Code",
    "CF401": "Tax Amount",
    "CF402": "Currency Code",
    "CF403": "Tax Code",
    "CF404": "TIN/Registration Number",
    "CF405": "Company Information",
    "CF410": "Supplier Phone Number",
    "CF414": "Supplier Phone Number",
    "CF415": "Buyer Phone Number",
    "DS302": "Invoice Number",
    "AUTH001": "User Authentication",
}


_TIN_WORD_RE = re.compile(r"\bTIN\b", re.IGNORECASE)
_TIN_CODE_RE = re.compile(r"(?:^|[^A-Z])TIN(?:[^A-Z]|$)")
_TIN_VALUE_RE = re.compile(r"\b([A-Z]{1,2}\d{8,12})\b")
_STATE_CODE_RE = re.compile(r"state code|CountrySubentityCode", re.IGNORECASE)
_DUPLICATE_RE = re.compile(r"duplicate", re.IGNORECASE)
_RATE_LIMIT_RE = re.compile(r"\b429\b|rate limit|too many", re.IGNORECASE)
_NETWORK_RE = re.compile(r"network|timeout|timed out|gateway|fetch", re.IGNORECASE)
_PRE_SUBMISSION_RE = re.compile(r"pre-?submission", re.IGNORECASE)

_RATE_LIMIT_CODES = {"429", "RATE_LIMIT", "RATE_LIMITED", "TOO_MANY_REQUESTS"}
_NETWORK_CODES = {"0", "TIMEOUT", "NETWORK_ERROR", "ECONNRESET", "ECONNREFUSED", "ETIMEDOUT"}
_NETWORK_STATUSES = {0, 502, 503, 504}


def _messages(error: NormalizedError) -> List[str]:
    return [error.original_message] + [detail.message for detail in error.details]


def _detail_codes(error: NormalizedError) -> List[str]:
    return [detail.code.upper() for detail in error.details if detail.code]


def _is_tin_related(error: NormalizedError) -> bool:
    if _TIN_CODE_RE.search(error.error_code.upper()):
        return True
    if any(_TIN_WORD_RE.search(text) for text in _messages(error)):
        return True
    return any(
        _TIN_WORD_RE.search(detail.property_name or "") or _TIN_WORD_RE.search(detail.property_path or "")
        for detail in error.details
    )


def _is_state_code_invalid(error: NormalizedError) -> bool:
    if any(_STATE_CODE_RE.search(text) for text in _messages(error)):
        return True
    return any(
        _STATE_CODE_RE.search(detail.property_name or "") or _STATE_CODE_RE.search(detail.property_path or "")
        for detail in error.details
    )


def _is_duplicate(error: NormalizedError) -> bool:
    code = error.error_code.upper()
    if "DUPLICATE" in code or code == "DS302" or "DS302" in _detail_codes(error):
        return True
    return bool(_DUPLICATE_RE.search(error.original_message))


def _is_rate_limited(error: NormalizedError) -> bool:
    if error.status_code == 429 or error.error_code.upper() in _RATE_LIMIT_CODES:
        return True
    return bool(_RATE_LIMIT_RE.search(error.original_message))


def _is_network_issue(error: NormalizedError) -> bool:
    if error.error_code.upper() in _NETWORK_CODES or error.status_code in _NETWORK_STATUSES:
        return True
    return bool(_NETWORK_RE.search(error.original_message))


def _is_pre_submission(error: NormalizedError) -> bool:
    if error.error_code.upper().startswith("PRE_SUBMISSION_VALIDATION"):
        return True
    return bool(_PRE_SUBMISSION_RE.search(error.original_message))


# Evaluated top to bottom; first match wins. UNKNOWN is the fallback.
CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("tin", ErrorCategory.TIN_MISMATCH, _is_tin_related),
    ClassificationRule("state_code", ErrorCategory.STATE_CODE_INVALID, _is_state_code_invalid),
    ClassificationRule("duplicate", ErrorCategory.DUPLICATE_SUBMISSION, _is_duplicate),
    ClassificationRule("rate_limit", ErrorCategory.RATE_LIMITED, _is_rate_limited),
    ClassificationRule("network", ErrorCategory.NETWORK_ISSUE, _is_network_issue),
    ClassificationRule("pre_submission", ErrorCategory.PRE_SUBMISSION_VALIDATION, _is_pre_submission),
)


@dataclass
class _RawError:
    """Fields pulled out of an arbitrary payload before normalization."""
    code: Optional[str] = None
    message: Optional[str] = None
    user_message: Optional[str] = None
    details: Tuple[ErrorDetail, ...] = ()
    status_code: Optional[int] = None

    def fill_from(self, other: "_RawError") -> None:
        """Fill missing fields from an outer payload."""
        self.code = self.code or other.code
        self.message = self.message or other.message
        self.user_message = self.user_message or other.user_message
        self.details = self.details or other.details
        if self.status_code is None:
            self.status_code = other.status_code


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _parse_detail(detail: Any) -> ErrorDetail:
    if isinstance(detail, ErrorDetail):
        return detail
    if isinstance(detail, dict):
        return ErrorDetail(
            message=(
                _text(detail.get("message"))
                or _text(detail.get("error"))
                or _text(detail.get("userMessage"))
                or _text(detail.get("originalMessage"))
                or ""
            ),
            code=_text(detail.get("code")) or _text(detail.get("errorCode")),
            target=_text(detail.get("target")),
            property_name=_text(detail.get("propertyName")),
            property_path=_text(detail.get("propertyPath")),
        )
    return ErrorDetail(message=_text(detail) or "")


def _parse_details(details: Any) -> Tuple[ErrorDetail, ...]:
    if details is None:
        return ()
    if isinstance(details, str):
        # LHDN sometimes sends the details array as a JSON string
        stripped = details.strip()
        if stripped.startswith(("[", "{")):
            try:
                details = json.loads(stripped)
            except ValueError:
                return (ErrorDetail(message=stripped),)
        else:
            return (ErrorDetail(message=stripped),) if stripped else ()
    if isinstance(details, dict):
        details = [details]
    if not isinstance(details, (list, tuple)):
        return ()
    return tuple(_parse_detail(detail) for detail in details)


def _looks_normalized(payload: Dict[str, Any]) -> bool:
    return {"errorCode", "userMessage", "category"} <= payload.keys()


class ErrorClassifier:
    """
    Normalizes raw error payloads and assigns a category.

    Classification is a pure function of the normalized value; the rule table
    is injectable for tests but defaults to CLASSIFICATION_RULES.
    """

    def __init__(
        self,
        rules: Tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
        profiles: Optional[Dict[ErrorCategory, CategoryProfile]] = None,
    ):
        self.rules = rules
        self.profiles = profiles or CATEGORY_PROFILES

    def profile_for(self, category: ErrorCategory) -> CategoryProfile:
        return self.profiles.get(category, self.profiles[ErrorCategory.UNKNOWN])

    def classify(self, normalized: NormalizedError) -> ErrorCategory:
        """Return the category of the first matching rule."""
        for rule in self.rules:
            if rule.matches(normalized):
                return rule.category
        return ErrorCategory.UNKNOWN

    def normalize(self, raw: Any) -> NormalizedError:
        """
        Reshape any raw error into a NormalizedError.

        Never raises: payloads that cannot be understood degrade to UNKNOWN
        with the generic message.
        """
        if isinstance(raw, NormalizedError):
            return raw

        try:
            if isinstance(raw, dict) and _looks_normalized(raw):
                return NormalizedError.from_dict(raw)
            return self._build(self._extract(raw, depth=0))
        except Exception:
            logger.warning("Could not normalize error payload of type %s", type(raw).__name__, exc_info=True)
            return self._build(_RawError())

    def error_panel(self, error: NormalizedError) -> Dict[str, Any]:
        """Presentation payload passed to the UI sink on failure."""
        profile = self.profile_for(error.category)
        return {
            "title": profile.title,
            "category": error.category.value,
            "userMessage": error.user_message,
            "fieldDescription": error.field_description,
            "guidance": list(error.guidance),
            "technical": {
                "errorCode": error.error_code,
                "originalMessage": error.original_message,
            },
        }

    def _build(self, raw: _RawError) -> NormalizedError:
        status_code = raw.status_code
        code = raw.code
        if not code and raw.details:
            code = next((detail.code for detail in raw.details if detail.code), None)
        if not code and status_code is not None:
            code = str(status_code)

        message = raw.message or raw.user_message or GENERIC_USER_MESSAGE
        provisional = NormalizedError(
            error_code=code or DEFAULT_ERROR_CODE,
            original_message=message,
            user_message=GENERIC_USER_MESSAGE,
            guidance=(),
            category=ErrorCategory.UNKNOWN,
            details=raw.details,
            status_code=status_code,
        )

        category = self.classify(provisional)
        profile = self.profile_for(category)

        if category == ErrorCategory.UNKNOWN:
            user_message = raw.user_message or raw.message or GENERIC_USER_MESSAGE
        else:
            user_message = profile.user_message

        return replace(
            provisional,
            user_message=user_message,
            guidance=profile.guidance,
            category=category,
            field_description=self._field_description(provisional, category),
        )

    def _field_description(self, error: NormalizedError, category: ErrorCategory) -> Optional[str]:
        if category == ErrorCategory.TIN_MISMATCH:
            tin = self._offending_tin(error.details)
            if tin:
                return f"Offending TIN: {tin}"

        codes = [error.error_code.upper()] + _detail_codes(error)
        for code in codes:
            if code in LHDN_CODE_FIELDS:
                return f"Field: {LHDN_CODE_FIELDS[code]}"
        return None

    @staticmethod
    def _offending_tin(details: Tuple[ErrorDetail, ...]) -> Optional[str]:
        for detail in details:
            mentions_tin = (
                _TIN_WORD_RE.search(detail.message)
                or _TIN_WORD_RE.search(detail.property_name or "")
                or _TIN_WORD_RE.search(detail.property_path or "")
            )
            if not mentions_tin:
                continue
            if detail.target:
                return detail.target
            match = _TIN_VALUE_RE.search(detail.message)
            if match:
                return match.group(1)
        return None

    def _extract(self, raw: Any, depth: int) -> _RawError:
        if raw is None or depth > _MAX_UNWRAP_DEPTH:
            return _RawError()

        if isinstance(raw, BaseException):
            return self._extract_exception(raw, depth)

        if isinstance(raw, str):
            stripped = raw.strip()
            if stripped.startswith(("{", "[")):
                try:
                    return self._extract(json.loads(stripped), depth + 1)
                except ValueError:
                    pass
            return _RawError(message=stripped or None)

        if isinstance(raw, (list, tuple)):
            return self._extract(raw[0], depth + 1) if raw else _RawError()

        if isinstance(raw, dict):
            return self._extract_mapping(raw, depth)

        return _RawError(message=_text(raw))

    def _extract_mapping(self, raw: Dict[str, Any], depth: int) -> _RawError:
        if _looks_normalized(raw):
            normalized = NormalizedError.from_dict(raw)
            return _RawError(
                code=normalized.error_code,
                message=normalized.original_message,
                user_message=normalized.user_message,
                details=normalized.details,
                status_code=normalized.status_code,
            )

        error_field = raw.get("error")
        outer = _RawError(
            code=_text(raw.get("code")) or _text(raw.get("errorCode")),
            message=(
                _text(raw.get("message"))
                or _text(raw.get("errorMessage"))
                or _text(raw.get("originalMessage"))
                or _text(raw.get("detail"))
                or (_text(error_field) if isinstance(error_field, str) else None)
            ),
            user_message=_text(raw.get("userMessage")),
            details=_parse_details(raw.get("details", raw.get("errorDetails"))),
            status_code=(
                _as_int(raw.get("statusCode"))
                or _as_int(raw.get("status_code"))
                or _as_int(raw.get("status"))
            ),
        )

        inner: Optional[_RawError] = None
        rejected = raw.get("rejectedDocuments")
        if isinstance(rejected, list) and rejected and isinstance(rejected[0], dict) and rejected[0].get("error"):
            inner = self._extract(rejected[0]["error"], depth + 1)
        elif isinstance(error_field, (dict, list)):
            inner = self._extract(error_field, depth + 1)
        elif isinstance(raw.get("lhdnResponse"), dict):
            inner = self._extract(raw["lhdnResponse"], depth + 1)
        elif isinstance(raw.get("payload"), dict):
            inner = self._extract(raw["payload"], depth + 1)

        if inner is None:
            return outer
        inner.fill_from(outer)
        return inner

    def _extract_exception(self, exc: BaseException, depth: int) -> _RawError:
        name = type(exc).__name__
        message = _text(str(exc))
        code = _text(getattr(exc, "code", None))
        status_code = _as_int(getattr(exc, "status_code", None))
        if status_code is None:
            status_code = _as_int(getattr(exc, "status", None))

        if isinstance(exc, TimeoutError) or "Timeout" in name:
            code = code or "TIMEOUT"
            message = message or "Request timed out"
        elif "Connect" in name or "Network" in name:
            code = code or "NETWORK_ERROR"
            message = message or "Network error occurred"

        outer = _RawError(code=code, message=message or name, status_code=status_code)

        payload = getattr(exc, "payload", None)
        if isinstance(payload, (dict, list, str)) and payload:
            inner = self._extract(payload, depth + 1)
            inner.fill_from(outer)
            return inner
        return outer


# Global classifier instance
error_classifier = ErrorClassifier()
