"""Tests for two-phase self-custody withdrawals through the rail router."""

import json
from decimal import Decimal

import base58
import httpx
import pytest

from payrail.errors import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    LimitExceededError,
    NotFoundError,
    SubmissionError,
    ValidationError,
)
from payrail.ledger.models import EntryStatus, TransferKind
from payrail.rails.base import Quote, RailContext, TransferDirection, TransferOutcome, TransferRequest
from payrail.rails.router import RailRouter
from payrail.settlement.solana import SolanaRPCClient
from payrail.utils.amounts import quantize_sol


def _withdraw(wallet, amount, destination, signed=None, auto_sign=False, user_id="alice"):
    return TransferRequest(
        user_id=user_id,
        kind=TransferKind.SELF_CUSTODY_WITHDRAWAL,
        amount=Decimal(amount),
        destination_address=destination,
        wallet_address=wallet.address,
        signed_transaction=signed,
        auto_sign=auto_sign,
    )


async def _withdraw_signed(rails, wallet, amount, destination):
    quote = await rails.dispatch(_withdraw(wallet, amount, destination))
    return await rails.dispatch(
        _withdraw(wallet, amount, destination, signed=wallet.sign(quote.unsigned_transaction))
    )


class TestQuote:
    """Phase 1: unsigned transaction."""

    @pytest.mark.asyncio
    async def test_quote_writes_no_ledger_entries(self, rails, registered_alice, bob, ledger_repo):
        for _ in range(3):
            quote = await rails.dispatch(_withdraw(registered_alice, "1", bob.address))
            assert isinstance(quote, Quote)

        assert await ledger_repo.count_entries() == 0

    @pytest.mark.asyncio
    async def test_quote_contents(self, rails, registered_alice, bob):
        quote = await rails.dispatch(_withdraw(registered_alice, "1.25", bob.address))
        body = quote.to_dict()

        assert body["action"] == "signature_required"
        details = body["withdrawalDetails"]
        assert details["from"] == registered_alice.address
        assert details["to"] == bob.address
        assert details["amount"] == "1.25"
        assert details["currentBalance"] == "50"
        assert details["memo"].startswith("self_custody_withdrawal-alice-")
        assert body["dailyLimits"]["remaining"] == "20"
        assert "entryId" not in body

    @pytest.mark.asyncio
    async def test_auto_sign_records_pending_entry(self, rails, registered_alice, bob, ledger_repo):
        quote = await rails.dispatch(
            _withdraw(registered_alice, "1", bob.address, auto_sign=True)
        )

        entry = await ledger_repo.get_entry(quote.entry_id)
        assert entry.status == EntryStatus.PENDING.value
        assert entry.meta["autoSign"] is True
        assert entry.meta["unsignedTransaction"] == quote.unsigned_transaction
        assert quote.to_dict()["entryId"] == entry.id

    @pytest.mark.asyncio
    async def test_minimum_amount_is_accepted(self, rails, registered_alice, bob):
        quote = await rails.dispatch(_withdraw(registered_alice, "0.001", bob.address))

        assert quote.amount == Decimal("0.001")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0.000999999", "20.000000001"])
    async def test_amount_outside_bounds(self, rails, registered_alice, bob, amount):
        with pytest.raises(ValidationError, match="Invalid amount"):
            await rails.dispatch(_withdraw(registered_alice, amount, bob.address))

    @pytest.mark.asyncio
    async def test_sub_lamport_precision_rejected(self, rails, registered_alice, bob):
        with pytest.raises(ValidationError, match="decimal places"):
            await rails.dispatch(_withdraw(registered_alice, "1.0000000001", bob.address))

    @pytest.mark.asyncio
    async def test_balance_equal_to_amount_is_insufficient(self, rails, registered_alice, bob, network):
        network.set_balance(registered_alice.address, Decimal("1"))

        with pytest.raises(InsufficientFundsError):
            await rails.dispatch(_withdraw(registered_alice, "1", bob.address))

    @pytest.mark.asyncio
    async def test_unregistered_user(self, rails, alice, bob):
        with pytest.raises(NotFoundError):
            await rails.dispatch(_withdraw(alice, "1", bob.address))

    @pytest.mark.asyncio
    async def test_wallet_must_match_registration(self, rails, registered_alice, bob, wallet_factory):
        with pytest.raises(ValidationError, match="registered wallet"):
            await rails.dispatch(_withdraw(wallet_factory("mallory"), "1", bob.address))

    @pytest.mark.asyncio
    async def test_destination_must_differ_from_source(self, rails, registered_alice):
        with pytest.raises(ValidationError):
            await rails.dispatch(_withdraw(registered_alice, "1", registered_alice.address))

    @pytest.mark.asyncio
    async def test_invalid_destination(self, rails, registered_alice):
        with pytest.raises(ValidationError, match="destinationAddress"):
            await rails.dispatch(_withdraw(registered_alice, "1", "not-a-wallet"))

    @pytest.mark.asyncio
    async def test_deposits_cannot_be_requested(self, rails, registered_alice, bob):
        request = _withdraw(registered_alice, "1", bob.address)
        request.kind = TransferKind.DEPOSIT

        with pytest.raises(ValidationError):
            await rails.dispatch(request)


class TestSubmit:
    """Phase 2: signed transaction submission."""

    @pytest.mark.asyncio
    async def test_successful_withdrawal(self, rails, registered_alice, bob, network, ledger_repo):
        outcome = await _withdraw_signed(rails, registered_alice, "1", bob.address)

        assert isinstance(outcome, TransferOutcome)
        entry = await ledger_repo.get_entry(outcome.entry_id)
        assert entry.status == EntryStatus.COMPLETED.value
        assert entry.external_ref == outcome.transaction_id
        assert entry.kind == TransferKind.SELF_CUSTODY_WITHDRAWAL.value
        assert outcome.new_balance == Decimal("48.999995")
        assert outcome.limits.used == Decimal("1")
        assert network.balances[bob.address] == 1_000_000_000

        wallet = await ledger_repo.get_wallet("alice")
        assert quantize_sol(wallet.balance) == Decimal("48.999995")
        assert quantize_sol(wallet.daily_transfer_used) == Decimal("1")

    @pytest.mark.asyncio
    async def test_confirmation_timeout_records_failure(
        self, rails, registered_alice, bob, network, ledger_repo
    ):
        network.never_confirm = True

        with pytest.raises(ConfirmationTimeoutError):
            await _withdraw_signed(rails, registered_alice, "1", bob.address)

        [entry] = await ledger_repo.get_user_entries("alice")
        assert entry.status == EntryStatus.FAILED.value
        assert "timed out" in entry.meta["error"]
        assert entry.meta["stage"] == "confirm"
        assert entry.external_ref is not None

        wallet = await ledger_repo.get_wallet("alice")
        assert quantize_sol(wallet.balance) == Decimal("50")

    @pytest.mark.asyncio
    async def test_rejected_submission_records_failure(
        self, rails, registered_alice, bob, network, ledger_repo
    ):
        network.reject_submissions = "Blockhash not found"

        with pytest.raises(SubmissionError):
            await _withdraw_signed(rails, registered_alice, "1", bob.address)

        [entry] = await ledger_repo.get_user_entries("alice")
        assert entry.status == EntryStatus.FAILED.value
        assert entry.meta["stage"] == "submit"
        assert "Blockhash not found" in entry.meta["error"]

    @pytest.mark.asyncio
    async def test_transaction_failing_on_chain(self, rails, registered_alice, bob, network, ledger_repo):
        network.land_with_error = {"InstructionError": [0, "Custom"]}

        with pytest.raises(SubmissionError):
            await _withdraw_signed(rails, registered_alice, "1", bob.address)

        [entry] = await ledger_repo.get_user_entries("alice")
        assert entry.status == EntryStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_signed_transaction_must_match_request(
        self, rails, registered_alice, bob, ledger_repo
    ):
        quote = await rails.dispatch(_withdraw(registered_alice, "1", bob.address))
        signed = registered_alice.sign(quote.unsigned_transaction)

        with pytest.raises(ValidationError) as exc_info:
            await rails.dispatch(_withdraw(registered_alice, "2", bob.address, signed=signed))

        assert exc_info.value.details == {"mismatched": ["amount"]}
        assert await ledger_repo.count_entries() == 0

    @pytest.mark.asyncio
    async def test_unsigned_transaction_rejected(self, rails, registered_alice, bob, ledger_repo):
        quote = await rails.dispatch(_withdraw(registered_alice, "1", bob.address))

        with pytest.raises(ValidationError, match="signature"):
            await rails.dispatch(
                _withdraw(registered_alice, "1", bob.address, signed=quote.unsigned_transaction)
            )
        assert await ledger_repo.count_entries() == 0

    @pytest.mark.asyncio
    async def test_replay_is_rejected(self, rails, registered_alice, bob, ledger_repo):
        quote = await rails.dispatch(_withdraw(registered_alice, "1", bob.address))
        signed = registered_alice.sign(quote.unsigned_transaction)
        await rails.dispatch(_withdraw(registered_alice, "1", bob.address, signed=signed))

        with pytest.raises(ValidationError, match="already processed"):
            await rails.dispatch(_withdraw(registered_alice, "1", bob.address, signed=signed))
        assert await ledger_repo.count_entries() == 1

    @pytest.mark.asyncio
    async def test_daily_cap_holds_across_withdrawals(self, rails, registered_alice, bob, ledger_repo):
        await _withdraw_signed(rails, registered_alice, "8", bob.address)
        await _withdraw_signed(rails, registered_alice, "8", bob.address)

        with pytest.raises(LimitExceededError):
            await _withdraw_signed(rails, registered_alice, "8", bob.address)

        outcome = await _withdraw_signed(rails, registered_alice, "4", bob.address)
        assert outcome.limits.used == Decimal("20")
        assert outcome.limits.remaining == Decimal("0")

        with pytest.raises(LimitExceededError):
            await rails.dispatch(_withdraw(registered_alice, "0.001", bob.address))


class TestRailToRail:
    """Transfers between the self-custody wallet and the custodial pool."""

    @pytest.mark.asyncio
    async def test_to_custodial_credits_pool_balance(
        self, rails, registered_alice, house_address, network, ledger_repo
    ):
        request = TransferRequest(
            user_id="alice",
            kind=TransferKind.RAIL_TRANSFER,
            amount=Decimal("2"),
            wallet_address=registered_alice.address,
        )
        quote = await rails.dispatch(request)
        assert quote.destination == house_address

        request.signed_transaction = registered_alice.sign(quote.unsigned_transaction)
        outcome = await rails.dispatch(request)

        entry = await ledger_repo.get_entry(outcome.entry_id)
        assert entry.kind == TransferKind.RAIL_TRANSFER.value
        assert entry.status == EntryStatus.COMPLETED.value
        custodial = await rails.custodial_balance("alice")
        assert custodial["balance"] == "2"
        assert network.balances[house_address] == 102_000_000_000

    @pytest.mark.asyncio
    async def test_to_self_custody_pays_registered_wallet(
        self, rails, registered_alice, network, ledger_repo
    ):
        await ledger_repo.credit_custodial("alice", Decimal("2"))
        await ledger_repo.session.commit()

        outcome = await rails.dispatch(
            TransferRequest(
                user_id="alice",
                kind=TransferKind.RAIL_TRANSFER,
                amount=Decimal("0.5"),
                direction=TransferDirection.TO_SELF_CUSTODY,
            )
        )

        assert outcome.new_balance == Decimal("1.5")
        assert network.balances[registered_alice.address] == 50_500_000_000
        entry = await ledger_repo.get_entry(outcome.entry_id)
        assert entry.destination_address == registered_alice.address

    @pytest.mark.asyncio
    async def test_to_self_custody_has_its_own_bounds(self, rails, registered_alice, ledger_repo):
        await ledger_repo.credit_custodial("alice", Decimal("5"))

        with pytest.raises(ValidationError, match="between 0.002 and 1 SOL"):
            await rails.dispatch(
                TransferRequest(
                    user_id="alice",
                    kind=TransferKind.RAIL_TRANSFER,
                    amount=Decimal("1.5"),
                    direction=TransferDirection.TO_SELF_CUSTODY,
                )
            )

    @pytest.mark.asyncio
    async def test_rail_transfers_count_toward_daily_cap(self, rails, registered_alice, bob):
        await _withdraw_signed(rails, registered_alice, "19.5", bob.address)

        with pytest.raises(LimitExceededError):
            await rails.dispatch(
                TransferRequest(
                    user_id="alice",
                    kind=TransferKind.RAIL_TRANSFER,
                    amount=Decimal("1"),
                    wallet_address=registered_alice.address,
                )
            )


class TestMalformedNodeResponse:
    """A garbled RPC reply still leaves a `failed` entry behind."""

    @pytest.fixture
    def rpc_rails(self, db_session, house_address):
        blockhash = base58.b58encode(b"\x07" * 32).decode()

        def handler(request):
            body = json.loads(request.content)
            method = body["method"]
            if method == "sendTransaction":
                return httpx.Response(200, text="<html>Bad Gateway</html>")
            if method == "getBalance":
                result = {"context": {"slot": 1}, "value": 50_000_000_000}
            elif method == "getLatestBlockhash":
                result = {"context": {"slot": 1}, "value": {"blockhash": blockhash, "lastValidBlockHeight": 300}}
            else:
                result = None
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        client = SolanaRPCClient(
            "http://rpc.test",
            poll_interval=0.01,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        return RailRouter(RailContext(db_session, network=client))

    @pytest.mark.asyncio
    async def test_non_json_submit_reply_fails_entry(self, rpc_rails, alice, bob, ledger_repo):
        await rpc_rails.register("alice", alice.address)
        await rpc_rails.ctx.commit()

        with pytest.raises(SubmissionError, match="malformed"):
            await _withdraw_signed(rpc_rails, alice, "1", bob.address)

        [entry] = await ledger_repo.get_user_entries("alice")
        assert entry.status == EntryStatus.FAILED.value
        assert entry.meta["stage"] == "submit"
