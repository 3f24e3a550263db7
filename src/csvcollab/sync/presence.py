"""Active-user presence derived from a row snapshot."""

from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..core.models import Row, User


class PresenceUser(BaseModel):
    """Display record for one user currently holding a lock."""

    user_id: str
    name: str
    initial: str
    color: str
    locked_rows: int = 0


class Presence(BaseModel):
    """Avatars shown directly plus the size of the collapsed remainder."""

    visible: List[PresenceUser] = Field(default_factory=list)
    overflow: int = 0

    @property
    def total(self) -> int:
        return len(self.visible) + self.overflow

    @property
    def user_ids(self) -> List[str]:
        return [u.user_id for u in self.visible]


def lock_holders(rows: Iterable[Row]) -> List[str]:
    """Distinct lock holders in snapshot order."""
    return list(dict.fromkeys(r.lock_holder for r in rows if r.lock_holder))


def aggregate_presence(
    rows: Sequence[Row],
    users: Iterable[User],
    max_visible: int = 5,
    fallback_color: str = "#9CA3AF",
) -> Presence:
    """Resolve the snapshot's lock holders to display records.

    Holders with no known user record still appear, under their id and
    the fallback colour.
    """
    by_id: Dict[str, User] = {u.user_id: u for u in users}
    counts: Dict[str, int] = {}
    for row in rows:
        if row.lock_holder:
            counts[row.lock_holder] = counts.get(row.lock_holder, 0) + 1

    active: List[PresenceUser] = []
    for holder in lock_holders(rows):
        user: Optional[User] = by_id.get(holder)
        if user is not None:
            active.append(
                PresenceUser(
                    user_id=holder,
                    name=user.display_name,
                    initial=user.initial,
                    color=user.color,
                    locked_rows=counts[holder],
                )
            )
        else:
            active.append(
                PresenceUser(
                    user_id=holder,
                    name=holder,
                    initial=holder[:1].upper() or "?",
                    color=fallback_color,
                    locked_rows=counts[holder],
                )
            )
    return Presence(visible=active[:max_visible], overflow=max(0, len(active) - max_visible))
