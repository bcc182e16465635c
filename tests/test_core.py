"""Tests for configuration, secrets and the forensic ledger in :mod:`msig.core`."""

from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path

import pytest

from msig import core
from msig.core import state_dir


def _records(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_state_dir_honours_environment(isolated_home: Path) -> None:
    assert state_dir() == (isolated_home / "state").resolve()
    assert core.log_dir() == (isolated_home / "state").resolve() / "logs"


def test_ledger_chains_hashes(tmp_path: Path) -> None:
    ledger = core.ForensicLedger(tmp_path / "audit.jsonl")

    first = ledger.log("sync_session", params={"wallet": "0xabc"})
    second = ledger.log("tx_confirm", params={"id": 1}, ok=False, severity="error")

    records = _records(tmp_path / "audit.jsonl")
    assert [r["action"] for r in records] == ["sync_session", "tx_confirm"]
    assert records[0]["prev"] == ""
    assert records[1]["prev"] == first["hash"]
    assert second["severity"] == "ERROR"
    assert second["signature"] == core.SIGNATURE_ERR
    assert "hmac" not in second


def test_ledger_hash_covers_record(tmp_path: Path) -> None:
    ledger = core.ForensicLedger(tmp_path / "audit.jsonl")

    entry = ledger.log("tx_submit", result={"hash": "0x01"})

    body = {key: value for key, value in entry.items() if key != "hash"}
    digest = hashlib.sha256(json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8"))
    assert entry["hash"] == digest.hexdigest()


def test_ledger_resumes_chain_from_existing_file(tmp_path: Path) -> None:
    path = tmp_path / "audit.jsonl"
    for index in range(200):
        core.ForensicLedger(path).log("noise", params={"index": index, "pad": "x" * 50})
    last = _records(path)[-1]

    entry = core.ForensicLedger(path).log("after_restart")

    assert entry["prev"] == last["hash"]


def test_ledger_hmac_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(core.HMAC_KEY_ENV, "audit-secret")
    ledger = core.ForensicLedger(tmp_path / "audit.jsonl")

    entry = ledger.log("owner_add", params={"owner": "0xabc"})

    body = {key: value for key, value in entry.items() if key != "hmac"}
    expected = hmac.new(
        b"audit-secret",
        json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    assert entry["hmac"] == expected


def test_ledger_hmac_prefers_keyring(tmp_path: Path, memory_keyring, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(core.HMAC_KEY_ENV, "env-secret")
    memory_keyring.set_password(core.DEFAULT_SERVICE, core.HMAC_KEY_ENV, "keyring-secret")
    ledger = core.ForensicLedger(tmp_path / "audit.jsonl")

    entry = ledger.log("owner_add")

    body = {key: value for key, value in entry.items() if key != "hmac"}
    expected = hmac.new(
        b"keyring-secret",
        json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    assert entry["hmac"] == expected


def test_secret_store_is_keyring_first(tmp_path: Path, memory_keyring, monkeypatch: pytest.MonkeyPatch) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text("RPC_URL=http://from-env:8545\nMSIG_POLL_INTERVAL=3\n", encoding="utf-8")
    monkeypatch.setenv("RPC_URL", "")
    monkeypatch.setenv("MSIG_POLL_INTERVAL", "")
    ledger = core.ForensicLedger(tmp_path / "audit.jsonl")
    store = core.SecretStore(ledger, core.EnvStore(env_path), service_name="msig-test", backend=memory_keyring)

    assert store.get("RPC_URL") == "http://from-env:8545"

    store.set("RPC_URL", "http://from-keyring:8545")
    assert store.get("RPC_URL") == "http://from-keyring:8545"
    assert store.get("MISSING_KEY", default="fallback") == "fallback"
    with pytest.raises(RuntimeError):
        store.require("MISSING_KEY")

    previews = [r["result"].get("preview", "") for r in _records(tmp_path / "audit.jsonl") if r["action"] == "config_set"]
    assert previews and "from-keyring" not in previews[0]


def test_settings_from_environment(tmp_path: Path, memory_keyring, monkeypatch: pytest.MonkeyPatch) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        "\n".join(
            [
                "MULTISIG_ADDRESS=0x5FbDB2315678afecb367f032d93F642f64180aa3",
                "MSIG_SUPPORTED_CHAINS=1, 5,0x7a69",
                "MSIG_RESYNC_POLICY=DELTA",
                "MSIG_DEDUPE_INTERVAL=0.5",
            ]
        ),
        encoding="utf-8",
    )
    for key in ("MULTISIG_ADDRESS", "MSIG_SUPPORTED_CHAINS", "MSIG_RESYNC_POLICY", "MSIG_DEDUPE_INTERVAL", "MSIG_POLL_INTERVAL", "RPC_URL", "MSIG_ACCOUNT"):
        monkeypatch.setenv(key, "")
    ledger = core.ForensicLedger(tmp_path / "audit.jsonl")
    context = core.AppContext(
        ledger=ledger,
        env_store=core.EnvStore(env_path),
        secrets=core.SecretStore(ledger, core.EnvStore(env_path), backend=memory_keyring),
        logger=core._configure_logger(),
    )

    settings = context.settings()

    assert settings.wallet_address == "0x5FbDB2315678afecb367f032d93F642f64180aa3"
    assert settings.supported_chain_ids == frozenset({1, 5, 31337})
    assert settings.resync_policy == "delta"
    assert settings.dedupe_interval == 0.5
    assert settings.poll_interval == core.DEFAULT_POLL_INTERVAL
    assert settings.rpc_url is None
    assert settings.account is None


def test_parse_chain_ids_handles_blank() -> None:
    assert core._parse_chain_ids(None) is None
    assert core._parse_chain_ids(" , ") is None


def test_context_is_a_singleton(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(core, "_CONTEXT", None)

    context = core.get_context()

    assert core.get_context() is context
    assert context.logger.name == "msig"


def test_get_web3_is_lazy_and_cached(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    ledger = core.ForensicLedger(tmp_path / "audit.jsonl")
    store = core.EnvStore(tmp_path / ".env")
    context = core.AppContext(
        ledger=ledger,
        env_store=store,
        secrets=core.SecretStore(ledger, store),
        logger=core._configure_logger(),
    )
    sentinel = object()
    calls = []

    def _connect(rpc_url):
        calls.append(rpc_url)
        return sentinel

    monkeypatch.setattr(context, "_connect_web3", _connect)

    assert context.get_web3(auto_connect=False) is None
    assert context.get_web3(rpc_url="http://node") is sentinel
    assert context.get_web3() is sentinel
    assert calls == ["http://node"]
