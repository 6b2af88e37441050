"""Static-password admin login, access-code judge login, and the marker that
keeps a client logged in across reloads. None of this is real security."""

import hmac
from dataclasses import dataclass
from typing import Iterable

from .drafts import LocalStorage
from .errors import AuthenticationError
from .sync import Judge

ADMIN_ROLE = 'admin'
JUDGE_ROLE = 'judge'
AUTH_STORAGE_KEY = 'artscore_auth'

INVALID_ACCESS_CODE = "Invalid access code. Please contact the organizers."
INVALID_ADMIN_PASSWORD = "Incorrect admin password."


def authenticate_judge(judges: Iterable[Judge], access_code) -> Judge:
    """Return the judge whose code equals ``access_code`` once trimmed."""
    code = str(access_code or '').strip()
    if code:
        for judge in judges:
            if judge.access_code and hmac.compare_digest(judge.access_code.encode(), code.encode()):
                return judge
    raise AuthenticationError(INVALID_ACCESS_CODE)


def authenticate_admin(password, expected_password: str) -> None:
    if not password or not hmac.compare_digest(str(password).encode(), expected_password.encode()):
        raise AuthenticationError(INVALID_ADMIN_PASSWORD)


@dataclass
class AuthMarker:
    role: str
    judge_id: str | None = None

    def to_dict(self):
        data = {'role': self.role}
        if self.judge_id:
            data['judgeId'] = self.judge_id
        return data

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict) or data.get('role') not in (ADMIN_ROLE, JUDGE_ROLE):
            return None
        judge_id = data.get('judgeId') or None
        if data['role'] == JUDGE_ROLE and not judge_id:
            return None
        return cls(role=data['role'], judge_id=judge_id)


class AuthSession:
    """Login state persisted client-side until an explicit logout."""

    def __init__(self, storage: LocalStorage, admin_password: str):
        self.storage = storage
        self.admin_password = admin_password

    @property
    def current(self) -> AuthMarker | None:
        return AuthMarker.from_dict(self.storage.get(AUTH_STORAGE_KEY))

    def login_admin(self, password) -> AuthMarker:
        authenticate_admin(password, self.admin_password)
        return self._remember(AuthMarker(role=ADMIN_ROLE))

    def login_judge(self, judges: Iterable[Judge], access_code) -> AuthMarker:
        judge = authenticate_judge(judges, access_code)
        return self._remember(AuthMarker(role=JUDGE_ROLE, judge_id=judge.id))

    def logout(self) -> None:
        self.storage.remove(AUTH_STORAGE_KEY)

    def _remember(self, marker: AuthMarker) -> AuthMarker:
        self.storage.set(AUTH_STORAGE_KEY, marker.to_dict())
        return marker
