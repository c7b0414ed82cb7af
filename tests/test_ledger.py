from concurrent.futures import ThreadPoolExecutor

import pytest

from bulk_seo import ledger
from bulk_seo.db import create_job
from bulk_seo.ledger import InsufficientBalance, ReservationSettled, UnknownReservation


def test_reserve_then_finalize_returns_unused_tokens() -> None:
    ledger.grant_tokens("a.myshopify.com", 100)

    res = ledger.reserve("a.myshopify.com", 40, "bulk-generate")
    bal = ledger.get_or_create("a.myshopify.com")
    assert bal.balance == 60
    assert bal.pending_amount == 40

    done = ledger.finalize(res.id, 25)
    assert done.status == ledger.FINALIZED
    assert done.settled_amount == 25

    bal = ledger.get_or_create("a.myshopify.com")
    assert bal.balance == 85
    assert bal.total_used == 25
    assert bal.total_purchased == 100
    assert bal.pending_amount == 0


def test_get_or_create_starts_at_zero() -> None:
    bal = ledger.get_or_create("new.myshopify.com")
    assert bal.balance == 0
    assert bal.reservations == []
    assert not ledger.has_balance("new.myshopify.com", 1)
    assert ledger.has_balance("new.myshopify.com", 0)


def test_included_grant_is_not_purchased() -> None:
    bal = ledger.grant_tokens("a.myshopify.com", 500, purchased=False, note="plan included")
    assert bal.balance == 500
    assert bal.total_purchased == 0
    assert bal.total_granted == 500
    assert ledger.list_events("a.myshopify.com")[0]["type"] == "grant_included"


def test_insufficient_balance_leaves_state_untouched() -> None:
    ledger.grant_tokens("a.myshopify.com", 10)

    with pytest.raises(InsufficientBalance) as info:
        ledger.reserve("a.myshopify.com", 20, "bulk-generate")
    assert info.value.required == 20
    assert info.value.available == 10

    bal = ledger.get_or_create("a.myshopify.com")
    assert bal.balance == 10
    assert bal.reservations == []


def test_concurrent_reserves_never_overspend() -> None:
    ledger.grant_tokens("a.myshopify.com", 100)

    def attempt(_):
        try:
            ledger.reserve("a.myshopify.com", 10, "bulk-generate")
            return True
        except InsufficientBalance:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(20)))

    assert results.count(True) == 10
    bal = ledger.get_or_create("a.myshopify.com")
    assert bal.balance == 0
    assert bal.pending_amount == 100


def test_finalize_twice_is_a_noop() -> None:
    ledger.grant_tokens("a.myshopify.com", 100)
    res = ledger.reserve("a.myshopify.com", 40, "bulk-generate")

    ledger.finalize(res.id, 30)
    again = ledger.finalize(res.id, 10)

    assert again.settled_amount == 30
    assert ledger.get_or_create("a.myshopify.com").balance == 70


def test_refund_then_finalize_is_rejected() -> None:
    ledger.grant_tokens("a.myshopify.com", 100)
    res = ledger.reserve("a.myshopify.com", 40, "bulk-generate")

    ledger.refund(res.id)
    assert ledger.get_or_create("a.myshopify.com").balance == 100

    with pytest.raises(ReservationSettled):
        ledger.finalize(res.id, 10)
    assert ledger.refund(res.id).status == ledger.REFUNDED
    assert ledger.get_or_create("a.myshopify.com").balance == 100


def test_unknown_reservation() -> None:
    with pytest.raises(UnknownReservation):
        ledger.finalize("res_missing", 1)
    with pytest.raises(UnknownReservation):
        ledger.refund("res_missing")


def test_overage_is_capped_and_recorded() -> None:
    ledger.grant_tokens("a.myshopify.com", 100)
    res = ledger.reserve("a.myshopify.com", 40, "bulk-generate")

    done = ledger.finalize(res.id, 70)

    assert done.settled_amount == 40
    bal = ledger.get_or_create("a.myshopify.com")
    assert bal.balance == 60
    assert bal.total_used == 40
    overage = [e for e in ledger.list_events("a.myshopify.com") if e["type"] == "overage"]
    assert overage[0]["tokens"] == 30


def test_sweep_refunds_orphans_but_not_active_jobs() -> None:
    ledger.grant_tokens("a.myshopify.com", 100)
    orphan = ledger.reserve("a.myshopify.com", 30, "bulk-generate")

    create_job("job-1", "a.myshopify.com", "google/gemini-2.5-flash-lite", [], 0)
    ledger.reserve("a.myshopify.com", 20, "bulk-generate", job_id="job-1")

    assert ledger.sweep_orphaned_reservations(-1) == 1
    assert ledger.get_reservation(orphan.id).status == ledger.REFUNDED

    bal = ledger.get_or_create("a.myshopify.com")
    assert bal.balance == 80
    assert bal.pending_amount == 20


def test_invalid_amounts() -> None:
    with pytest.raises(ValueError):
        ledger.reserve("a.myshopify.com", 0, "bulk-generate")
    with pytest.raises(ValueError):
        ledger.grant_tokens("a.myshopify.com", -5)
