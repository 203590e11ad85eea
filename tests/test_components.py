"""Tests for supporting components: settings, amounts, locks, signer, RPC client, notifier."""

import asyncio
import json
from decimal import Decimal

import base58
import httpx
import pytest
from nacl.signing import SigningKey

from payrail.config import Settings, get_settings
from payrail.errors import (
    ConfirmationTimeoutError,
    CriticalBookkeepingError,
    SettlementError,
    SubmissionError,
    ValidationError,
)
from payrail.notifications.game_server import GameServerNotifier
from payrail.settlement.solana import SolanaRPCClient
from payrail.settlement.transaction import build_unsigned_transfer, decode_transfer, verify_signatures
from payrail.signing.base import KeyNotFoundError, SigningError
from payrail.signing.factory import get_house_address, get_house_signer
from payrail.signing.local import LocalSigner, load_signing_key
from payrail.utils.amounts import format_sol, lamports_to_sol, quantize_sol, sol_to_lamports
from payrail.utils.locks import LockTimeoutError, active_lock_count, is_user_locked, user_transfer_lock


class TestSettings:

    def test_test_environment(self):
        settings = get_settings()

        assert settings.environment == "test"
        assert settings.dry_run is True
        assert not settings.is_production

    def test_rail_bounds(self):
        settings = Settings()

        assert settings.rail_bounds("self_custody_withdrawal") == (Decimal("0.001"), Decimal("20"))
        assert settings.rail_bounds("to_self_custody") == (Decimal("0.002"), Decimal("1.0"))
        with pytest.raises(KeyError):
            settings.rail_bounds("deposit")

    def test_safe_dict_redacts_secrets(self):
        settings = Settings(
            database_url="postgresql+asyncpg://payrail:hunter2@db/payrail",
            house_wallet_private_key="secret",
        )

        safe = settings.get_safe_dict()

        assert "hunter2" not in json.dumps(safe)
        assert safe["database_url"] == "postgresql+asyncpg://payrail:***@db/payrail"
        assert safe["house_wallet"]["private_key"] == "***"


class TestAmounts:

    def test_quantize_removes_float_noise(self):
        assert quantize_sol(0.30000000000000004) == Decimal("0.3")
        assert quantize_sol(None) == Decimal("0")

    def test_lamport_conversion(self):
        assert sol_to_lamports(Decimal("1.5")) == 1_500_000_000
        assert sol_to_lamports(Decimal("0.000000001")) == 1
        assert lamports_to_sol(2_500_000_000) == Decimal("2.5")

    def test_format(self):
        assert format_sol(Decimal("20")) == "20"
        assert format_sol(Decimal("1.500000000")) == "1.5"
        assert format_sol(None) == "0"


class TestErrors:

    def test_error_body(self):
        error = ValidationError("Invalid amount", details={"minAmount": "0.001"})

        assert error.status_code == 400
        assert error.to_dict() == {"error": "Invalid amount", "details": {"minAmount": "0.001"}}

    def test_critical_error_body(self):
        error = CriticalBookkeepingError("Contact support", transaction_id="sig-1")

        assert error.to_dict() == {"error": "Contact support", "critical": True, "transactionId": "sig-1"}

    def test_settlement_error_hierarchy(self):
        assert issubclass(SubmissionError, SettlementError)
        assert issubclass(ConfirmationTimeoutError, SettlementError)


class TestUserLocks:
    """Per-user transfer locks."""

    @pytest.mark.asyncio
    async def test_same_user_is_serialized(self):
        order = []

        async def worker(name):
            async with user_transfer_lock("alice", operation=name):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    @pytest.mark.asyncio
    async def test_timeout(self):
        async with user_transfer_lock("alice"):
            assert is_user_locked("alice")
            with pytest.raises(LockTimeoutError):
                async with user_transfer_lock("alice", timeout=0.05):
                    pass

        assert not is_user_locked("alice")

    @pytest.mark.asyncio
    async def test_users_do_not_block_each_other(self):
        async with user_transfer_lock("alice"):
            async with user_transfer_lock("bob", timeout=0.05):
                assert is_user_locked("bob")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        with pytest.raises(RuntimeError):
            async with user_transfer_lock("alice"):
                raise RuntimeError("boom")

        assert not is_user_locked("alice")

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        async def worker(user_id):
            async with user_transfer_lock(user_id):
                await asyncio.sleep(0.01)

        await asyncio.gather(*(worker(f"user-{i}") for i in range(20)), worker("user-0"))

        assert active_lock_count() == 0

    @pytest.mark.asyncio
    async def test_lock_kept_while_awaited(self):
        async with user_transfer_lock("alice"):
            with pytest.raises(LockTimeoutError):
                async with user_transfer_lock("alice", timeout=0.05):
                    pass
            assert is_user_locked("alice")
            assert active_lock_count() == 1

        assert active_lock_count() == 0


class TestHouseSigner:

    def test_load_64_byte_secret(self):
        key = SigningKey(b"\x01" * 32)
        secret = base58.b58encode(bytes(key) + bytes(key.verify_key)).decode()

        assert bytes(load_signing_key(secret).verify_key) == bytes(key.verify_key)

    def test_corrupt_secret(self):
        key = SigningKey(b"\x01" * 32)
        secret = base58.b58encode(bytes(key) + b"\x00" * 32).decode()

        with pytest.raises(SigningError):
            load_signing_key(secret)
        with pytest.raises(SigningError):
            load_signing_key(base58.b58encode(b"\x01" * 16).decode())

    def test_address_mismatch(self):
        secret = base58.b58encode(b"\x02" * 32).decode()

        with pytest.raises(SigningError):
            LocalSigner.from_secret(secret, expected_address="11111111111111111111111111111111")

    def test_missing_secret(self):
        with pytest.raises(KeyNotFoundError):
            LocalSigner.from_secret(None)

    def test_dry_run_uses_ephemeral_signer(self):
        signer = get_house_signer()

        assert signer is get_house_signer()
        assert signer.address == LocalSigner.ephemeral().address
        assert get_house_address() == signer.address

    @pytest.mark.asyncio
    async def test_sign(self):
        signer = LocalSigner.ephemeral()
        destination = base58.b58encode(b"\x09" * 32).decode()
        blockhash = base58.b58encode(b"\x07" * 32).decode()
        tx = build_unsigned_transfer(signer.address, destination, 1000, blockhash, memo="m")

        signed = await signer.sign_transaction(tx)

        assert decode_transfer(signed).is_signed
        assert verify_signatures(signed)

    @pytest.mark.asyncio
    async def test_sign_foreign_transaction(self):
        signer = LocalSigner.ephemeral()
        source = base58.b58encode(b"\x08" * 32).decode()
        destination = base58.b58encode(b"\x09" * 32).decode()
        blockhash = base58.b58encode(b"\x07" * 32).decode()

        with pytest.raises(SigningError):
            await signer.sign_transaction(build_unsigned_transfer(source, destination, 1, blockhash))


def _rpc_client(handler) -> SolanaRPCClient:
    transport = httpx.MockTransport(handler)
    return SolanaRPCClient(
        "http://rpc.test",
        poll_interval=0.01,
        client=httpx.AsyncClient(transport=transport),
    )


def _result(request: httpx.Request, result):
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class TestSolanaRPCClient:
    """JSON-RPC client against a mocked endpoint."""

    @pytest.mark.asyncio
    async def test_get_balance(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "getBalance"
            return _result(request, {"context": {"slot": 1}, "value": 2_500_000_000})

        client = _rpc_client(handler)

        assert await client.get_balance("addr") == Decimal("2.5")
        await client.close()

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"}})

        client = _rpc_client(handler)

        with pytest.raises(SettlementError, match="Node is behind"):
            await client.get_balance("addr")
        with pytest.raises(SubmissionError):
            await client.send_raw_transaction(b"\x00")

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = _rpc_client(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(SettlementError, match="HTTP 503"):
            await client.get_latest_blockhash()

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = _rpc_client(lambda request: httpx.Response(200, text="<html>Bad Gateway</html>"))

        with pytest.raises(SettlementError, match="malformed"):
            await client.get_balance("addr")
        with pytest.raises(SubmissionError, match="malformed"):
            await client.send_raw_transaction(b"\x00")

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        client = _rpc_client(lambda request: httpx.Response(200, json=[1, 2, 3]))

        with pytest.raises(SettlementError, match="malformed"):
            await client.get_transaction("sig")

    @pytest.mark.asyncio
    async def test_malformed_results(self):
        client = _rpc_client(lambda request: _result(request, ["unexpected"]))

        with pytest.raises(SettlementError):
            await client.get_latest_blockhash()
        with pytest.raises(SettlementError):
            await client.get_transaction("sig")
        with pytest.raises(SubmissionError, match="no signature"):
            await client.send_raw_transaction(b"\x00")

    @pytest.mark.asyncio
    async def test_confirm_polls_until_confirmed(self):
        statuses = iter([None, {"confirmationStatus": "processed", "err": None}, {"confirmationStatus": "confirmed", "err": None}])

        def handler(request):
            return _result(request, {"context": {"slot": 1}, "value": [next(statuses)]})

        client = _rpc_client(handler)

        await client.confirm_transaction("sig", timeout=1.0)

    @pytest.mark.asyncio
    async def test_confirm_reports_on_chain_error(self):
        def handler(request):
            return _result(request, {"value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "Custom"]}}]})

        client = _rpc_client(handler)

        with pytest.raises(SubmissionError, match="failed on chain"):
            await client.confirm_transaction("sig", timeout=1.0)

    @pytest.mark.asyncio
    async def test_confirm_timeout(self):
        client = _rpc_client(lambda request: _result(request, {"value": [None]}))

        with pytest.raises(ConfirmationTimeoutError, match="timed out"):
            await client.confirm_transaction("sig", timeout=0.05)

    @pytest.mark.asyncio
    async def test_get_transaction(self):
        def handler(request):
            return _result(
                request,
                {
                    "slot": 77,
                    "meta": {"err": None},
                    "transaction": {
                        "message": {
                            "instructions": [
                                {"program": "spl-memo", "parsed": "memo"},
                                {
                                    "program": "system",
                                    "parsed": {
                                        "type": "transfer",
                                        "info": {"source": "A", "destination": "B", "lamports": 42},
                                    },
                                },
                            ]
                        }
                    },
                },
            )

        tx = await _rpc_client(handler).get_transaction("sig")

        assert tx.succeeded
        assert (tx.source, tx.destination, tx.lamports, tx.slot) == ("A", "B", 42, 77)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self):
        tx = await _rpc_client(lambda request: _result(request, None)).get_transaction("sig")

        assert not tx.found
        assert not tx.succeeded


class TestGameServerNotifier:

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        notifier = GameServerNotifier(None)

        assert not notifier.enabled
        assert await notifier.notify("alice", "deposit", Decimal("1"), "sig") is False

    @pytest.mark.asyncio
    async def test_unreachable_server_is_not_fatal(self):
        notifier = GameServerNotifier("http://127.0.0.1:9/notify", timeout=0.5)

        assert await notifier.notify("alice", "deposit", Decimal("1"), "sig") is False
