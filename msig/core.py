"""Runtime plumbing for msig: settings, secrets, audit ledger and the web3 client."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import stat
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

import keyring
import keyring.errors
from dotenv import dotenv_values, load_dotenv
from web3 import Web3

try:  # pragma: no cover - eth-tester is only needed for the offline fallback
    from web3.providers.eth_tester import EthereumTesterProvider
except ImportError:  # pragma: no cover
    EthereumTesterProvider = None  # type: ignore

DOTENV_PATH = Path(".env")
SERVICE_ENV_VAR = "MSIG_KEYRING_SERVICE"
HMAC_KEY_ENV = "MSIG_AUDIT_HMAC_KEY"
STATE_DIR_ENV = "MSIG_STATE_DIR"
DEFAULT_SERVICE = "msig"
RPC_ENV_KEY = "RPC_URL"
WALLET_ENV_KEY = "MULTISIG_ADDRESS"
ACCOUNT_ENV_KEY = "MSIG_ACCOUNT"
SUPPORTED_CHAINS_ENV = "MSIG_SUPPORTED_CHAINS"
POLL_INTERVAL_ENV = "MSIG_POLL_INTERVAL"
DEDUPE_INTERVAL_ENV = "MSIG_DEDUPE_INTERVAL"
RESYNC_POLICY_ENV = "MSIG_RESYNC_POLICY"
DEFAULT_POLL_INTERVAL = 12.0
DEFAULT_DEDUPE_INTERVAL = 2.0
SIGNATURE_OK = "✅"
SIGNATURE_WARN = "⚠️"
SIGNATURE_ERR = "💥"
LOG_FORMAT = "%(asctime)s - msig - %(levelname)s - %(message)s"


def state_dir() -> Path:
    """Absolute msig state directory; ``MSIG_STATE_DIR`` overrides ``~/.msig``."""

    override = os.environ.get(STATE_DIR_ENV)
    return Path(override).expanduser().resolve() if override else Path.home() / ".msig"


def log_dir() -> Path:
    return state_dir() / "logs"


def _private_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    try:
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:  # pragma: no cover - e.g. filesystems without POSIX modes
        pass


def _tail_line(path: Path, chunk: int = 4096) -> Optional[bytes]:
    """Return the last non-empty line of ``path`` without reading it all."""

    with path.open("rb") as handle:
        end = handle.seek(0, os.SEEK_END)
        data = b""
        while end > 0:
            start = max(0, end - chunk)
            handle.seek(start)
            data = handle.read(end - start) + data
            end = start
            if data.rstrip(b"\n").count(b"\n"):
                break
    lines = data.rstrip(b"\n").splitlines()
    return lines[-1] if lines else None


def _canonical(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


# -- audit ledger ---------------------------------------------------------


class ForensicLedger:
    """Hash-chained JSON-lines audit trail; entries are HMAC'd when a key is set.

    Each entry stores the previous entry's ``hash`` under ``prev`` so edits or
    deletions break the chain. The HMAC key comes from the keyring first and
    ``MSIG_AUDIT_HMAC_KEY`` second.
    """

    _markers = {"ERROR": SIGNATURE_ERR, "WARNING": SIGNATURE_WARN, "WARN": SIGNATURE_WARN}

    def __init__(self, path: Optional[Path] = None, hmac_key_env: str = HMAC_KEY_ENV) -> None:
        self.path = path or log_dir() / "msig_audit.jsonl"
        self.hmac_key_env = hmac_key_env
        _private_file(self.path)

    def head(self) -> str:
        """Hash of the newest entry, or ``""`` for an empty or unreadable ledger."""

        try:
            line = _tail_line(self.path)
            return str(json.loads(line).get("hash", "")) if line else ""
        except (OSError, ValueError):
            return ""

    def _mac_key(self) -> Optional[bytes]:
        try:
            secret = keyring.get_password(os.getenv(SERVICE_ENV_VAR, DEFAULT_SERVICE), self.hmac_key_env)
        except keyring.errors.KeyringError:
            secret = None
        secret = secret or os.getenv(self.hmac_key_env)
        return secret.encode("utf-8") if secret else None

    def log(
        self,
        action: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        result: Optional[Dict[str, Any]] = None,
        ok: bool = True,
        severity: str = "INFO",
    ) -> Dict[str, Any]:
        """Append one entry for ``action`` and return it."""

        level = severity.upper()
        entry: Dict[str, Any] = {
            "prev": self.head(),
            "ts": time.time(),
            "action": action,
            "params": params or {},
            "result": result or {},
            "ok": bool(ok),
            "severity": level,
            "signature": self._markers.get(level, SIGNATURE_OK) if ok else SIGNATURE_ERR,
        }
        entry["hash"] = hashlib.sha256(_canonical(entry)).hexdigest()
        key = self._mac_key()
        if key:
            entry["hmac"] = hmac.new(key, _canonical(entry), hashlib.sha256).hexdigest()
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        return entry


# -- configuration --------------------------------------------------------


class EnvStore:
    """Values from a ``.env`` file, falling back to the process environment."""

    def __init__(self, path: Path = DOTENV_PATH) -> None:
        self.path = path
        load_dotenv(self.path, override=False)
        raw = dotenv_values(self.path) if self.path.exists() else {}
        self.values: Dict[str, str] = {key: value for key, value in raw.items() if value is not None}

    def get(self, key: str) -> Optional[str]:
        if key in self.values:
            return self.values[key]
        return os.getenv(key)


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "*" * len(value)
    return f"{value[:2]}{'*' * (len(value) - 4)}{value[-2:]}"


class SecretStore:
    """Settings lookup that prefers the system keyring over ``.env`` values."""

    def __init__(
        self,
        ledger: ForensicLedger,
        env_store: EnvStore,
        *,
        service_name: Optional[str] = None,
        backend: Optional[Any] = None,
    ) -> None:
        self.ledger = ledger
        self.env_store = env_store
        self.service_name = service_name or os.getenv(SERVICE_ENV_VAR, DEFAULT_SERVICE)
        self.backend = keyring if backend is None else backend

    def lookup(self, key: str) -> Tuple[Optional[str], str]:
        """Return ``(value, source)`` where source is keyring, env or missing."""

        try:
            stored = self.backend.get_password(self.service_name, key)
        except keyring.errors.KeyringError:
            stored = None
        if stored:
            return stored, "keyring"
        from_env = self.env_store.get(key)
        if from_env:
            return from_env, "env"
        return None, "missing"

    def get(self, key: str, *, default: Optional[str] = None) -> Optional[str]:
        value, source = self.lookup(key)
        if source == "keyring":
            self.ledger.log("config_get", params={"key": key, "source": source}, result={"preview": _mask(value)})
        return value if value is not None else default

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            self.ledger.log("config_missing", params={"key": key}, ok=False, severity="WARNING")
            raise RuntimeError(f"missing required setting {key}")
        return value

    def set(self, key: str, value: str) -> None:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("setting value must not be empty")
        self.backend.set_password(self.service_name, key, cleaned)
        self.ledger.log("config_set", params={"key": key}, result={"preview": _mask(cleaned)})


def _parse_chain_ids(raw: Optional[str]) -> Optional[FrozenSet[int]]:
    if not raw:
        return None
    ids = frozenset(int(part, 0) for part in (piece.strip() for piece in raw.split(",")) if part)
    return ids or None


@dataclass
class Settings:
    """Resolved runtime configuration."""

    rpc_url: Optional[str] = None
    wallet_address: Optional[str] = None
    account: Optional[str] = None
    supported_chain_ids: Optional[FrozenSet[int]] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    dedupe_interval: float = DEFAULT_DEDUPE_INTERVAL
    resync_policy: str = "single"
    extras: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_store(cls, store: SecretStore) -> "Settings":
        get = store.get
        return cls(
            rpc_url=get(RPC_ENV_KEY),
            wallet_address=get(WALLET_ENV_KEY),
            account=get(ACCOUNT_ENV_KEY),
            supported_chain_ids=_parse_chain_ids(get(SUPPORTED_CHAINS_ENV)),
            poll_interval=float(get(POLL_INTERVAL_ENV) or DEFAULT_POLL_INTERVAL),
            dedupe_interval=float(get(DEDUPE_INTERVAL_ENV) or DEFAULT_DEDUPE_INTERVAL),
            resync_policy=(get(RESYNC_POLICY_ENV) or "single").lower(),
        )


# -- application context --------------------------------------------------


@dataclass
class AppContext:
    """Process-wide bundle of ledger, configuration, logger and web3 client."""

    ledger: ForensicLedger
    env_store: EnvStore
    secrets: SecretStore
    logger: logging.Logger
    _web3: Optional[Web3] = None

    def settings(self) -> Settings:
        return Settings.from_store(self.secrets)

    def get_web3(self, *, rpc_url: Optional[str] = None, auto_connect: bool = True) -> Optional[Web3]:
        """Return the shared client, connecting on first use when allowed."""

        if self._web3 is None and auto_connect:
            self._web3 = self._connect_web3(rpc_url)
        return self._web3

    def _connect_web3(self, rpc_url: Optional[str]) -> Web3:
        endpoint = rpc_url or self.secrets.get(RPC_ENV_KEY)
        if not endpoint:
            return self._offline_web3()
        client = Web3(Web3.HTTPProvider(endpoint, request_kwargs={"timeout": 10}))
        try:
            reachable = client.is_connected()
            chain_id = client.eth.chain_id if reachable else None
        except Exception as exc:
            self.ledger.log("web3_connect", params={"rpc": endpoint}, ok=False, severity="WARNING", result={"error": str(exc)})
            reachable, chain_id = False, None
        if reachable:
            self.ledger.log("web3_connect", params={"rpc": endpoint}, result={"chain_id": chain_id})
        else:
            self.logger.warning("%s RPC %s unreachable", SIGNATURE_WARN, endpoint)
        return client

    def _offline_web3(self) -> Web3:
        if EthereumTesterProvider is None:
            raise RuntimeError("no RPC_URL configured and eth-tester is unavailable")
        self.ledger.log("web3_connect", params={"rpc": "tester"}, result={"mode": "ethereum-tester"})
        return Web3(EthereumTesterProvider())


_CONTEXT: Optional[AppContext] = None


def _configure_logger() -> logging.Logger:
    logger = logging.getLogger("msig")
    if logger.handlers:
        return logger
    log_dir().mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in (
        logging.FileHandler(log_dir() / "msig.log", encoding="utf-8"),
        logging.StreamHandler(sys.stderr),
    ):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def initialise_context(service_name: Optional[str] = None, *, env_path: Path = DOTENV_PATH) -> AppContext:
    """Build and install the process-wide :class:`AppContext`."""

    global _CONTEXT
    ledger = ForensicLedger()
    env_store = EnvStore(env_path)
    _CONTEXT = AppContext(
        ledger=ledger,
        env_store=env_store,
        secrets=SecretStore(ledger, env_store, service_name=service_name),
        logger=_configure_logger(),
    )
    return _CONTEXT


def get_context() -> AppContext:
    return _CONTEXT if _CONTEXT is not None else initialise_context()


def shutdown() -> None:
    get_context().logger.info("%s msig shutdown", SIGNATURE_OK)
    logging.shutdown()


__all__ = [
    "AppContext",
    "EnvStore",
    "ForensicLedger",
    "SecretStore",
    "Settings",
    "get_context",
    "initialise_context",
    "log_dir",
    "shutdown",
    "state_dir",
]
