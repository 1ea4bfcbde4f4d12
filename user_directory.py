import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


SUPERVISOR_ROLES = ("Supervisor", "Administrator")


@dataclass
class UserRecord:
    user_id: str
    agency_id: str
    name: str = ""
    email: Optional[str] = None
    contact: Optional[str] = None
    role: str = "Field_Worker"

    @property
    def is_admin(self) -> bool:
        return self.role == "Administrator"

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "agencyId": self.agency_id,
            "name": self.name,
            "email": self.email,
            "contact": self.contact,
            "role": self.role,
        }


class UserDirectory:
    """Read-only view of users; account management lives elsewhere."""

    def __init__(self, users: Optional[List[UserRecord]] = None):
        self._users: Dict[str, UserRecord] = {u.user_id: u for u in users or []}

    @classmethod
    def from_json(cls, path: Path) -> "UserDirectory":
        if not path.exists():
            return cls()
        try:
            raw = json.loads(path.read_text())
        except json.JSONDecodeError:
            print(f"[users] could not parse {path}; directory empty")
            return cls()
        entries = raw.get("users", []) if isinstance(raw, dict) else raw
        users: List[UserRecord] = []
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict) or not entry.get("userId"):
                continue
            users.append(
                UserRecord(
                    user_id=str(entry["userId"]),
                    agency_id=str(entry.get("agencyId") or ""),
                    name=entry.get("name") or "",
                    email=entry.get("email"),
                    contact=entry.get("contact"),
                    role=entry.get("role") or "Field_Worker",
                )
            )
        print(f"[users] loaded {len(users)} users from {path.name}")
        return cls(users)

    def get_user(self, user_id: object) -> Optional[UserRecord]:
        return self._users.get(str(user_id))

    def display_name(self, user_id: object) -> str:
        user = self.get_user(user_id)
        return user.name if user and user.name else f"user {user_id}"

    def supervisor_emails(self, agency_id: object) -> List[str]:
        return sorted(
            u.email
            for u in self._users.values()
            if u.agency_id == str(agency_id) and u.role in SUPERVISOR_ROLES and u.email
        )


__all__ = ["SUPERVISOR_ROLES", "UserDirectory", "UserRecord"]
