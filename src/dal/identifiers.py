"""Identifier validation for table and column names.

Values always travel as bound parameters. Identifiers cannot be bound, so every
model and field name is checked here before it is spliced into SQL text, and then
quoted with :func:`quote_identifier`.
"""

import re
from typing import Iterable, Literal, NewType, Optional

from dal.errors import InvalidIdentifierError, InvalidQueryError

ValidatedModel = NewType("ValidatedModel", str)
ValidatedField = NewType("ValidatedField", str)
SortDirection = Literal["ASC", "DESC"]

MAX_IDENTIFIER_LENGTH = 64

FIELD_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

# Auth-domain entities, singular and plural.
DEFAULT_MODEL_NAMES = frozenset(
    {
        "user",
        "users",
        "session",
        "sessions",
        "account",
        "accounts",
        "verification",
        "verifications",
        "twoFactor",
        "twoFactors",
        "passkey",
        "passkeys",
        "invitation",
        "invitations",
        "member",
        "members",
        "organization",
        "organizations",
        "role",
        "roles",
        "permission",
        "permissions",
    }
)


def pluralize(name: str) -> str:
    """Return the plural form used for registered model names."""
    if name.endswith("s"):
        return name
    return f"{name}s"


class ModelAllowList:
    """Set of model names that may be used as table names."""

    def __init__(self, names: Optional[Iterable[str]] = None) -> None:
        """Seed with ``names`` or the default auth-domain models."""
        self._names = set(DEFAULT_MODEL_NAMES if names is None else names)

    def register(self, name: str, plural: Optional[str] = None) -> None:
        """Register a model name together with its plural form.

        Both forms must pass the field pattern since they become table names.
        """
        for candidate in (name, plural or pluralize(name)):
            check_identifier_shape(candidate, "model")
            self._names.add(candidate)

    def plural_of(self, name: str) -> str:
        """Return the registered plural of ``name``, or ``name`` itself."""
        plural = pluralize(name)
        return plural if plural in self._names else name

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self):
        return iter(sorted(self._names))

    def __len__(self) -> int:
        return len(self._names)


DEFAULT_ALLOW_LIST = ModelAllowList()


def check_identifier_shape(name: object, kind: str) -> str:
    """Reject names that are empty, too long, or outside the identifier pattern."""
    if not name or not isinstance(name, str):
        raise InvalidIdentifierError(
            f"{kind.capitalize()} name must be a non-empty string", name, kind
        )
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(
            f"{kind.capitalize()} name exceeds maximum length of "
            f"{MAX_IDENTIFIER_LENGTH} characters",
            name,
            kind,
        )
    if not FIELD_PATTERN.match(name):
        raise InvalidIdentifierError(
            f"Invalid {kind} name: {name!r}. Must contain only letters, digits and "
            "underscores, starting with a letter",
            name,
            kind,
        )
    return name


def validate_model(name: object, allow_list: Optional[ModelAllowList] = None) -> ValidatedModel:
    """Validate a model (table) name against the allow-list.

    Raises:
        InvalidIdentifierError: empty, non-string, too long, or not registered.
    """
    allowed = allow_list if allow_list is not None else DEFAULT_ALLOW_LIST
    if not name or not isinstance(name, str):
        raise InvalidIdentifierError("Model name must be a non-empty string", name, "model")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(
            f"Model name exceeds maximum length of {MAX_IDENTIFIER_LENGTH} characters",
            name,
            "model",
        )
    if name not in allowed:
        raise InvalidIdentifierError(
            f"Invalid model name: {name!r}. Must be one of: {', '.join(allowed)}",
            name,
            "model",
        )
    return ValidatedModel(name)


def validate_field(name: object) -> ValidatedField:
    """Validate a field (column) name against the identifier pattern.

    Raises:
        InvalidIdentifierError: empty, non-string, too long, or bad characters.
    """
    return ValidatedField(check_identifier_shape(name, "field"))


def validate_sort_direction(direction: object) -> SortDirection:
    """Normalize a sort direction; missing means ascending."""
    if direction is None or direction == "":
        return "ASC"
    if not isinstance(direction, str):
        raise InvalidQueryError(f"Invalid sort direction: {direction!r}. Must be ASC or DESC")
    normalized = direction.strip().upper()
    if normalized not in ("ASC", "DESC"):
        raise InvalidQueryError(f"Invalid sort direction: {direction!r}. Must be ASC or DESC")
    return normalized  # type: ignore[return-value]


def quote_identifier(identifier: str) -> str:
    """Wrap an identifier in double quotes, doubling any embedded quote."""
    escaped = identifier.replace('"', '""')
    return f'"{escaped}"'
