"""Tests for local position snapshots and their version checks."""

import pytest

from perpbot.engine.positions import PositionBook, apply_fill_math


class TestFillMath:
    def test_open_from_flat(self):
        assert apply_fill_math(0.0, 0.0, 2.0, 100.0) == (2.0, 100.0, 0.0)

    def test_add_averages_entry(self):
        size, avg, realized = apply_fill_math(2.0, 100.0, 2.0, 110.0)
        assert size == 4.0
        assert avg == pytest.approx(105.0)
        assert realized == 0.0

    def test_partial_reduce_realizes_pnl(self):
        size, avg, realized = apply_fill_math(4.0, 100.0, -1.0, 120.0)
        assert size == 3.0
        assert avg == 100.0
        assert realized == pytest.approx(20.0)

    def test_short_profit_when_price_falls(self):
        _, _, realized = apply_fill_math(-2.0, 100.0, 2.0, 90.0)
        assert realized == pytest.approx(20.0)

    def test_flip_through_zero_reopens_at_fill(self):
        size, avg, realized = apply_fill_math(1.0, 100.0, -3.0, 110.0)
        assert size == -2.0
        assert avg == 110.0
        assert realized == pytest.approx(10.0)


class TestPositionBook:
    def test_apply_fill_bumps_version(self, engine, make_bot):
        bot = make_bot()
        book = PositionBook(engine)
        first = book.apply_fill(bot.id, "SOL", 0.66, 150.0, fee=0.05)
        second = book.apply_fill(bot.id, "SOL", 0.34, 160.0)
        assert second.version == first.version + 1
        snap = book.get(bot.id, "SOL")
        assert snap.base_size == pytest.approx(1.0)
        assert snap.total_fees == pytest.approx(0.05)

    def test_zero_realizes_and_flattens(self, engine, make_bot):
        bot = make_bot()
        book = PositionBook(engine)
        book.apply_fill(bot.id, "SOL", 1.0, 100.0)
        outcome = book.zero(bot.id, "SOL", 110.0)
        assert outcome.realized_pnl == pytest.approx(10.0)
        snap = book.get(bot.id, "SOL")
        assert snap.base_size == 0.0
        assert snap.realized_pnl == pytest.approx(10.0)

    def test_overwrite_with_stale_version_is_refused(self, engine, make_bot):
        bot = make_bot()
        book = PositionBook(engine)
        stale = book.get_or_create(bot.id, "SOL").version
        book.apply_fill(bot.id, "SOL", 0.5, 150.0)

        assert book.overwrite(bot.id, "SOL", stale, 0.0, 0.0, note="stale venue read") is False
        assert book.get(bot.id, "SOL").base_size == pytest.approx(0.5)

    def test_overwrite_with_current_version(self, engine, make_bot):
        bot = make_bot()
        book = PositionBook(engine)
        book.apply_fill(bot.id, "SOL", 0.5, 150.0)
        version = book.get(bot.id, "SOL").version

        assert book.overwrite(bot.id, "SOL", version, 0.7, 151.0, note="drift", equity=310.0)
        snap = book.get(bot.id, "SOL")
        assert snap.base_size == pytest.approx(0.7)
        assert snap.equity == 310.0
        assert snap.reconciled_at is not None

    def test_dust_overwrite_snaps_to_zero(self, engine, make_bot):
        bot = make_bot()
        book = PositionBook(engine, dust_threshold=1e-4)
        version = book.get_or_create(bot.id, "SOL").version
        book.overwrite(bot.id, "SOL", version, 0.00001, 150.0)
        assert book.get(bot.id, "SOL").base_size == 0.0

    def test_touch_reconciled_keeps_version(self, engine, make_bot):
        bot = make_bot()
        book = PositionBook(engine)
        version = book.get_or_create(bot.id, "SOL").version
        assert book.touch_reconciled(bot.id, "SOL", version, equity=300.0)
        snap = book.get(bot.id, "SOL")
        assert snap.version == version
        assert snap.equity == 300.0
