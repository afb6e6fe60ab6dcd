"""
models/guild.py
---------------
Domain model for a guild's preferences (aka: configuration).

Some bot features work out of the box, others rely on per-guild data:
welcome and goodbye messages, the admin channel, the advertisement policy
and the privilege system. A `Guild` holds all of it for one community.
"""

from collections.abc import Iterable
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Callable, Optional

from db.exceptions import ImmutableField, InvalidField, MessageTooLong

MAX_MESSAGE_LENGTH = 2048
BIGINT_MIN = -(2 ** 63)
BIGINT_MAX = 2 ** 63 - 1


class Privilege(str, Enum):
    """
    The bot's permission system, independent from Discord permissions.

    Server admins can grant a role a privilege so its members use the matching
    commands without needing the equivalent Discord permission.
    """
    # low-level administration such as message deletion, meant for moderators
    MANAGER = "priv_manager"
    # every feature except event tooling and owner-only commands; implies MANAGER
    ADMIN = "priv_admin"
    # organise events within the server
    EVENT = "priv_event"

    @property
    def column(self) -> str:
        return self.value

    @property
    def implied(self) -> tuple["Privilege", ...]:
        """This privilege and every privilege it grants along the way."""
        if self is Privilege.ADMIN:
            return (Privilege.ADMIN, Privilege.MANAGER)
        return (self,)

    def __str__(self) -> str:
        return self.name.lower()


# ── Field validation ──────────────────────────────────────


def _check_id(field: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidField(field, f"expected an integer, got {type(value).__name__}")
    if not BIGINT_MIN <= value <= BIGINT_MAX:
        raise InvalidField(field, f"{value} does not fit a 64-bit integer")
    return value


def _check_optional_id(field: str, value: Any) -> Optional[int]:
    return None if value is None else _check_id(field, value)


def _check_message(field: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidField(field, f"expected text, got {type(value).__name__}")
    if len(value) > MAX_MESSAGE_LENGTH:
        raise MessageTooLong(field, len(value), MAX_MESSAGE_LENGTH)
    return value


def _check_flag(field: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidField(field, f"expected a boolean, got {type(value).__name__}")
    return value


def _check_ids(field: str, value: Any) -> tuple[int, ...]:
    # array fields default to empty rather than absent
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise InvalidField(field, f"expected a sequence of integers, got {type(value).__name__}")
    return tuple(_check_id(field, item) for item in value)


_VALIDATORS: dict[str, Callable[[str, Any], Any]] = {
    "id": _check_id,
    "welcome_message": _check_message,
    "goodbye_message": _check_message,
    "advertise": _check_flag,
    "admin_chan": _check_optional_id,
    "poll_chans": _check_ids,
    "priv_admin": _check_ids,
    "priv_manager": _check_ids,
    "priv_event": _check_ids,
}


def validate_field(name: str, value: Any) -> Any:
    """
    Validate and normalize a single `Guild` field.

    Returns:
        The normalized value (sequences become tuples, None arrays become empty).

    Raises:
        KeyError: If `name` is not a Guild field.
        ValidationError: If the value violates the field's invariant.
    """
    return _VALIDATORS[name](name, value)


# ── Model ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Guild:
    """
    Preferences of a single guild, one row of the `guilds` table.

    Attributes:
        id: Discord guild ID. Primary key, never changes.
        welcome_message: Sent to new members when they join. Disabled if None.
        goodbye_message: Sent when a member leaves. Disabled if None.
        advertise: Advertisement policy.
        admin_chan: Channel where events demanding the admins' attention are
            posted (slap notices, upcoming updates, ...).
        poll_chans: Channels used for polls.
        priv_admin: Roles holding the admin privilege.
        priv_manager: Roles holding the manager privilege.
        priv_event: Roles holding the event privilege.
    """
    id: int
    welcome_message: Optional[str] = None
    goodbye_message: Optional[str] = None
    advertise: bool = True
    admin_chan: Optional[int] = None
    poll_chans: tuple[int, ...] = ()
    priv_admin: tuple[int, ...] = ()
    priv_manager: tuple[int, ...] = ()
    priv_event: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, validate_field(f.name, getattr(self, f.name)))

    def roles_with(self, privilege: Privilege) -> tuple[int, ...]:
        """Roles holding `privilege`."""
        return getattr(self, privilege.column)

    def with_changes(self, **changes: Any) -> "Guild":
        """
        Copy of this guild with some fields replaced.

        Raises:
            ImmutableField: If `id` is part of the changes.
            ValidationError: If a new value violates an invariant.
        """
        if "id" in changes:
            raise ImmutableField("id")
        return replace(self, **changes)

    def __str__(self) -> str:
        return f"Guild {self.id} (advertise={self.advertise}, admins={len(self.priv_admin)})"


GUILD_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(Guild))
