from datetime import timedelta

from reciter.application.sync.ledger import EPOCH, LocalWriteLedger


def test_unknown_key_defaults_to_epoch():
    ledger = LocalWriteLedger()
    assert ledger.get("romans-8-v1-4") == EPOCH
    assert "romans-8-v1-4" not in ledger
    assert len(ledger) == 0


def test_advance_only_moves_forward(now):
    ledger = LocalWriteLedger()
    ledger.advance("k", now)
    ledger.advance("k", now - timedelta(seconds=5))
    assert ledger.get("k") == now

    later = now + timedelta(seconds=1)
    assert ledger.advance("k", later) == later
    assert ledger.get("k") == later


def test_should_apply_is_strict(now):
    ledger = LocalWriteLedger()
    ledger.advance("k", now)
    assert not ledger.should_apply("k", now - timedelta(microseconds=1))
    assert not ledger.should_apply("k", now)
    assert ledger.should_apply("k", now + timedelta(microseconds=1))
    assert ledger.should_apply("other", now)


def test_ledgers_are_independent(now):
    a, b = LocalWriteLedger(), LocalWriteLedger()
    a.advance("k", now)
    assert "k" not in b
