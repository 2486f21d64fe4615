import math

import pytest

from shared.models.models import OrderRecord, SignalRecord, TradeRecord
from shared.state.record_store import RecordStore, RecordWriter


@pytest.fixture
def store(tmp_path):
    s = RecordStore(tmp_path / "state" / "records.sqlite3")
    yield s
    s.close()


def test_store_round_trips_each_record_type(store):
    order = OrderRecord("o-1", "2024-01-01T00:00:00Z", "BTC/USDT", 100.0, 1.0, "buy", "open")
    trade = TradeRecord("o-1", "2024-01-01T00:00:01Z", "buy", 100.0, 0.4)
    signal = SignalRecord(voi=-3.0, delta_price=0.25, timestamp="2024-01-01T00:00:02Z")

    store.save(order)
    store.save(trade)
    store.save(signal)

    assert store.list_orders() == [order]
    assert store.list_trades() == [trade]
    assert store.list_signals() == [signal]


def test_non_finite_signal_is_stored_as_null(store):
    store.save_signal(SignalRecord(voi=math.nan, delta_price=math.inf, timestamp="t"))

    (rec,) = store.list_signals()
    assert math.isnan(rec.voi)
    assert math.isnan(rec.delta_price)


def test_unknown_record_type_rejected(store):
    with pytest.raises(TypeError):
        store.save({"voi": 1.0})


def test_writer_flush_writes_queued_records(store):
    writer = RecordWriter(store)
    assert writer.submit(SignalRecord(voi=1.0, delta_price=0.0, timestamp="t1"))
    assert writer.submit(SignalRecord(voi=2.0, delta_price=0.1, timestamp="t2"))

    assert writer.flush() == 2
    assert writer.written == 2
    assert [r.voi for r in store.list_signals()] == [1.0, 2.0]


def test_writer_drops_when_queue_full(store):
    writer = RecordWriter(store, maxsize=1)
    assert writer.submit(SignalRecord(voi=1.0, delta_price=0.0, timestamp="t1"))
    assert not writer.submit(SignalRecord(voi=2.0, delta_price=0.0, timestamp="t2"))


def test_disabled_writer_drops_everything():
    writer = RecordWriter(None)
    assert not writer.submit(SignalRecord(voi=1.0, delta_price=0.0, timestamp="t"))
    assert writer.flush() == 0


def test_write_failure_is_logged_not_raised(store, caplog):
    writer = RecordWriter(store)
    store.close()
    writer.submit(TradeRecord("o-1", "t", "buy", 100.0, 1.0))

    writer.flush()

    assert writer.written == 0
    assert "Failed to save" in caplog.text


@pytest.mark.asyncio
async def test_background_writer_persists_and_closes(tmp_path):
    store = RecordStore(tmp_path / "records.sqlite3")
    writer = RecordWriter(store)
    await writer.start()

    writer.submit(OrderRecord("o-9", "t", "BTC/USDT", 100.0, 1.0, "sell", "close"))
    await writer.queue.join()
    assert writer.written == 1

    await writer.close()

    reopened = RecordStore(tmp_path / "records.sqlite3")
    assert [o.order_id for o in reopened.list_orders()] == ["o-9"]
    reopened.close()
