import pytest

from citrea_pay.chain.gas import FeeQuote
from citrea_pay.watcher.sweeper import SweepEngine, SweepOutcome

from conftest import SWEEPER, TOKENS, TREASURY_ADDRESS, USDC, WBTC


@pytest.fixture
def sweeper(store, chain, deriver):
    return SweepEngine(
        store,
        chain,
        deriver,
        native_symbol="BTC",
        token_addresses=TOKENS,
        sweep_contract=SWEEPER,
        fee_bump_percent=5,
        max_attempts=5,
    )


def test_native_payout_is_amount_minus_fee(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    assert chain.fee_quote.total == 50_000

    report = sweeper.run_cycle()

    assert report.outcomes == {invoice.invoice_id: SweepOutcome.SWEPT}
    assert len(chain.native_sends) == 1
    send = chain.native_sends[0]
    assert send["to"] == TREASURY_ADDRESS
    assert send["value"] == 950_000
    assert store.get(invoice.invoice_id).swept is True


def test_rejections_escalate_fee(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    chain.reject_sends = 2

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.SWEPT
    fees = [send["quote"].max_fee_per_gas for send in chain.native_sends]
    assert len(fees) == 3
    assert fees == sorted(fees) and fees[0] < fees[-1]
    for send in chain.native_sends:
        assert send["value"] == 1_000_000 - send["quote"].total


def test_gives_up_after_max_attempts(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    chain.fee_quote = FeeQuote(gas_limit=21_000, max_fee_per_gas=1, max_priority_fee_per_gas=1)
    chain.reject_sends = 100

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.EXHAUSTED
    assert len(chain.native_sends) == 5
    fees = [send["quote"].max_fee_per_gas for send in chain.native_sends]
    assert all(a < b for a, b in zip(fees, fees[1:]))
    assert store.get(invoice.invoice_id).swept is False


def test_amount_below_fee_is_stuck(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=40_000, fulfilled=True)

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.STUCK
    assert chain.native_sends == []
    assert store.get(invoice.invoice_id).swept is False


def test_token_sweep_moves_every_configured_token(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=500, asset="USDC", fulfilled=True)

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.SWEPT
    assert len(chain.sweeps) == 1
    call = chain.sweeps[0]
    assert call["target"] == invoice.receiving_address
    assert call["tokens"] == [USDC, WBTC]
    assert call["treasury"] == TREASURY_ADDRESS
    assert call["delegation"] == invoice.delegation
    assert store.get(invoice.invoice_id).swept is True


def test_token_invoice_without_delegation_fails(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=500, asset="USDC", fulfilled=True)
    invoice.delegation = None
    with store._session.begin() as session:
        session.merge(invoice)

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.FAILED
    assert chain.sweeps == []


def test_one_failure_does_not_block_others(sweeper, chain, store, make_invoice):
    broken = make_invoice(amount=1_000_000, fulfilled=True)
    healthy = make_invoice(amount=1_000_000, fulfilled=True)
    chain.failing_fee_addresses.add(broken.receiving_address)

    report = sweeper.run_cycle()

    assert report.outcomes == {broken.invoice_id: SweepOutcome.FAILED, healthy.invoice_id: SweepOutcome.SWEPT}
    assert store.get(broken.invoice_id).swept is False
    assert store.get(healthy.invoice_id).swept is True


def test_only_fulfilled_unswept_invoices_are_swept(sweeper, chain, make_invoice):
    make_invoice(amount=1_000_000)
    make_invoice(amount=1_000_000, fulfilled=True, swept=True)

    assert sweeper.run_cycle().outcomes == {}
    assert chain.native_sends == []


def test_swept_invoice_is_not_swept_again(sweeper, chain, make_invoice):
    make_invoice(amount=1_000_000, fulfilled=True)

    sweeper.run_cycle()
    assert sweeper.run_cycle().outcomes == {}
    assert len(chain.native_sends) == 1


def test_mismatched_address_fails(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    invoice.receiving_address = "0x" + "42" * 20
    with store._session.begin() as session:
        session.merge(invoice)

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.FAILED
    assert chain.native_sends == []


def test_overlapping_cycle_is_skipped(sweeper, make_invoice):
    make_invoice(amount=1_000_000, fulfilled=True)
    with sweeper.latch.acquire():
        assert sweeper.run_cycle().skipped is True
    assert sweeper.latch.running is False


def test_timed_out_send_that_was_mined_is_not_resent(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    chain.unconfirmed_sends = 1
    chain.mined_unconfirmed = True

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.SWEPT
    assert len(chain.native_sends) == 1
    stored = store.get(invoice.invoice_id)
    assert stored.swept is True
    assert stored.sweep_nonce == 0
    assert chain.receipts[stored.sweep_tx_hash] == 1


def test_timed_out_send_is_retried_with_same_nonce(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    chain.unconfirmed_sends = 1

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.SWEPT
    assert [send["nonce"] for send in chain.native_sends] == [0, 0]
    assert chain.native_sends[1]["quote"].max_fee_per_gas > chain.native_sends[0]["quote"].max_fee_per_gas


def test_later_cycle_recognizes_mined_attempt(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    chain.unconfirmed_sends = 100

    assert sweeper.run_cycle().outcomes[invoice.invoice_id] == SweepOutcome.EXHAUSTED
    stored = store.get(invoice.invoice_id)
    assert stored.swept is False
    assert stored.sweep_nonce == 0
    sends = len(chain.native_sends)

    # The last attempt lands after the cycle gave up
    chain.receipts[stored.sweep_tx_hash] = 1
    chain.unconfirmed_sends = 0

    assert sweeper.run_cycle().outcomes[invoice.invoice_id] == SweepOutcome.SWEPT
    assert len(chain.native_sends) == sends
    assert store.get(invoice.invoice_id).swept is True


def test_later_cycle_recognizes_advanced_nonce(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    store.record_sweep_attempt(invoice.invoice_id, nonce=0)
    chain.nonces[invoice.receiving_address] = 1

    assert sweeper.run_cycle().outcomes[invoice.invoice_id] == SweepOutcome.SWEPT
    assert chain.native_sends == []


def test_token_sweep_recognizes_mined_attempt(sweeper, chain, store, make_invoice):
    invoice = make_invoice(amount=500, asset="USDC", fulfilled=True)
    store.record_sweep_attempt(invoice.invoice_id, tx_hash="0x" + "ab" * 32)
    chain.receipts["0x" + "ab" * 32] = 1

    assert sweeper.run_cycle().outcomes[invoice.invoice_id] == SweepOutcome.SWEPT
    assert chain.sweeps == []


def test_token_sweep_chain_error_does_not_block_others(sweeper, chain, store, make_invoice):
    broken = make_invoice(amount=500, asset="USDC", fulfilled=True)
    healthy = make_invoice(amount=500, asset="WBTC", fulfilled=True)
    chain.failing_sweep_targets.add(broken.receiving_address)

    report = sweeper.run_cycle()

    assert report.outcomes == {broken.invoice_id: SweepOutcome.FAILED, healthy.invoice_id: SweepOutcome.SWEPT}
    assert store.get(broken.invoice_id).swept is False
    assert store.get(healthy.invoice_id).swept is True


def test_unexpected_error_does_not_block_others(sweeper, chain, store, make_invoice):
    broken = make_invoice(amount=1_000_000, fulfilled=True)
    healthy = make_invoice(amount=1_000_000, fulfilled=True)
    original = chain.estimate_native_transfer_fee

    def flaky(sender, to):
        if sender == broken.receiving_address:
            raise AttributeError("'NoneType' object has no attribute 'eth'")
        return original(sender, to)

    chain.estimate_native_transfer_fee = flaky

    report = sweeper.run_cycle()

    assert report.outcomes == {broken.invoice_id: SweepOutcome.FAILED, healthy.invoice_id: SweepOutcome.SWEPT}
    assert store.get(healthy.invoice_id).swept is True


def test_latch_released_after_unexpected_error(sweeper, store, monkeypatch):
    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(store, "list_sweep_candidates", explode)

    with pytest.raises(RuntimeError):
        sweeper.run_cycle()
    assert sweeper.latch.running is False

    monkeypatch.undo()
    assert sweeper.run_cycle().skipped is False


def test_refused_swept_flag_is_skipped(sweeper, chain, store, make_invoice, monkeypatch):
    invoice = make_invoice(amount=1_000_000, fulfilled=True)
    monkeypatch.setattr(store, "mark_swept", lambda invoice_id: False)

    report = sweeper.run_cycle()

    assert report.outcomes[invoice.invoice_id] == SweepOutcome.SKIPPED
    assert report.count(SweepOutcome.SWEPT) == 0
    assert store.get(invoice.invoice_id).swept is False
