from __future__ import annotations

import sys
from pathlib import Path

import keyring
import keyring.backend
import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tests.fakes import OWNERS, FakeNetwork  # noqa: E402


class MemoryKeyring(keyring.backend.KeyringBackend):
    priority = 1

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self._data.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self._data[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        self._data.pop((service, username), None)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("MSIG_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.delenv("MSIG_AUDIT_HMAC_KEY", raising=False)
    keyring.set_keyring(MemoryKeyring())
    return tmp_path


@pytest.fixture()
def memory_keyring() -> MemoryKeyring:
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    return backend


@pytest.fixture()
def network() -> FakeNetwork:
    return FakeNetwork(count=3, owners=OWNERS)
