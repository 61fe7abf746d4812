"""
Tests for orderbox_kernel.repositories against in-memory SQLite.

Upsert and selection rules for emails, order merge and cancel application,
product cache lookups, and shop setting filters.
"""

from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from orderbox_kernel.domain.text import normalize_product_name
from orderbox_kernel.domain.values import (
    CancelInfo,
    MailMessage,
    OrderInfo,
    OrderLine,
    ParsedProduct,
)
from orderbox_kernel.exceptions import RepositoryError
from orderbox_kernel.repositories.base import BaseRepository
from orderbox_kernel.repositories.orders import item_names_match

SENDER = "Hobby Shop <orders@hobby.example>"


def _mail(message_id, internal_date=1_000, **overrides):
    fields = {
        "message_id": message_id,
        "body_plain": "body",
        "from_address": SENDER,
        "subject": "Order confirmation",
        "internal_date": internal_date,
    }
    fields.update(overrides)
    return MailMessage(**fields)


# =============================================================================
# Emails
# =============================================================================


class TestEmailRepository:
    def test_filter_new_ids_keeps_input_order(self, email_repo):
        email_repo.save_messages([_mail("b")])
        assert email_repo.filter_new_message_ids(["c", "b", "a"]) == ["c", "a"]
        assert email_repo.filter_new_message_ids([]) == []

    def test_save_counts_inserts_and_skips(self, email_repo):
        assert email_repo.save_messages([_mail("m1"), _mail("m2")]) == (2, 0)
        assert email_repo.save_messages([_mail("m1")]) == (0, 1)
        assert email_repo.count() == 2

    def test_upsert_fills_missing_body(self, email_repo):
        email_repo.save_messages([_mail("m1", body_plain=None)])
        assert email_repo.get_unparsed_emails() == []

        saved, _ = email_repo.save_messages([_mail("m1", body_plain="now present")])

        assert saved == 1
        rows = email_repo.get_unparsed_emails()
        assert [r.body_plain for r in rows] == ["now present"]

    def test_upsert_never_overwrites_with_null(self, email_repo):
        email_repo.save_messages([_mail("m1", subject="Original")])
        email_repo.save_messages([_mail("m1", subject=None)])
        assert email_repo.get_unparsed_emails()[0].subject == "Original"

    def test_unparsed_oldest_first(self, email_repo):
        email_repo.save_messages([
            _mail("late", internal_date=3_000),
            _mail("early", internal_date=1_000),
            _mail("middle", internal_date=2_000),
        ])
        rows = email_repo.get_unparsed_emails()
        assert [r.message_id for r in rows] == ["early", "middle", "late"]
        assert [r.message_id for r in email_repo.get_unparsed_emails(limit=1)] == ["early"]

    def test_unparsed_requires_sender(self, email_repo):
        email_repo.save_messages([_mail("m1", from_address=None)])
        assert email_repo.get_unparsed_emails() == []

    def test_mark_parsed(self, email_repo):
        email_repo.save_messages([_mail("m1"), _mail("m2")])
        first = email_repo.get_unparsed_emails()[0]

        assert email_repo.mark_parsed([first.id]) == 1
        assert [r.message_id for r in email_repo.get_unparsed_emails()] == ["m2"]
        assert email_repo.mark_parsed([]) == 0


# =============================================================================
# Orders
# =============================================================================


class TestOrderRepository:
    def _save(self, order_repo, *lines, order_date=None):
        return order_repo.save_order(
            OrderInfo("A-1", order_date=order_date, items=tuple(lines)),
            shop_domain="hobby.example",
            shop_name="Hobby Shop",
        )

    def test_save_and_get(self, order_repo):
        self._save(order_repo, OrderLine("Zaku II", 2200, 2))

        order = order_repo.get_order("A-1", "hobby.example")

        assert order.items == (OrderLine("Zaku II", 2200, 2),)
        assert order_repo.get_status("A-1", "hobby.example") == "active"
        assert order_repo.get_order("A-1", "other.example") is None

    def test_second_save_merges(self, order_repo):
        first = self._save(order_repo, OrderLine("Zaku II", 2200, 1))
        second = self._save(
            order_repo,
            OrderLine("Zaku II", 9999, 5),
            OrderLine("Gouf", 2500, 1),
            order_date=datetime(2024, 5, 1),
        )

        assert first == second
        order = order_repo.get_order("A-1", "hobby.example")
        assert order.order_date == datetime(2024, 5, 1)
        assert order.items == (OrderLine("Zaku II", 2200, 1), OrderLine("Gouf", 2500, 1))

    def test_order_without_domain(self, order_repo):
        order_repo.save_order(OrderInfo("B-1", items=(OrderLine("Dom"),)))
        assert order_repo.get_order("B-1") is not None

    def test_partial_cancel_reduces_quantity(self, order_repo):
        self._save(order_repo, OrderLine("Zaku II", 2200, 3))

        order_repo.apply_cancel(CancelInfo("A-1", "Zaku II", 2), shop_domain="hobby.example")

        assert order_repo.get_order("A-1", "hobby.example").items[0].quantity == 1

    def test_full_cancel_removes_item_and_cancels_order(self, order_repo):
        self._save(order_repo, OrderLine("Zaku II", 2200, 1))

        order_repo.apply_cancel(CancelInfo("A-1", "Zaku II", 1), shop_domain="hobby.example")

        assert order_repo.get_order("A-1", "hobby.example").items == ()
        assert order_repo.get_status("A-1", "hobby.example") == "cancelled"

    def test_cancel_matches_abbreviated_name(self, order_repo):
        self._save(order_repo, OrderLine("HG 1/144 Zaku II (Reissue)", 2200, 2))

        order_repo.apply_cancel(CancelInfo("A-1", "Zaku II", 1), shop_domain="hobby.example")

        assert order_repo.get_order("A-1", "hobby.example").items[0].quantity == 1

    def test_cancel_unknown_order_raises(self, order_repo):
        with pytest.raises(RepositoryError, match="not found"):
            order_repo.apply_cancel(CancelInfo("missing", "Zaku II"), shop_domain="hobby.example")

    def test_cancel_unknown_item_changes_nothing(self, order_repo):
        self._save(order_repo, OrderLine("Zaku II", 2200, 1))

        with pytest.raises(RepositoryError) as exc_info:
            order_repo.apply_cancel(CancelInfo("A-1", "Gouf"), shop_domain="hobby.example")

        assert exc_info.value.operation == "apply_cancel"
        assert order_repo.get_order("A-1", "hobby.example").items[0].quantity == 1

    def test_cancel_rejects_non_positive_quantity(self, order_repo):
        self._save(order_repo, OrderLine("Zaku II", 2200, 1))
        with pytest.raises(RepositoryError, match="Invalid cancel quantity"):
            order_repo.apply_cancel(CancelInfo("A-1", "Zaku II", 0), shop_domain="hobby.example")


@pytest.mark.parametrize(
    "product, item, expected",
    [
        ("Zaku II", "Zaku II", True),
        ("Zaku", "HG Zaku II", True),
        ("HG Zaku II Ver.2", "Zaku II", True),
        ("ＺＡＫＵ-II", "zaku ii", True),
        ("Gouf", "Zaku II", False),
    ],
)
def test_item_names_match(product, item, expected):
    assert item_names_match(product, item, None) is expected


# =============================================================================
# Products
# =============================================================================


class TestProductRepository:
    RX78 = ParsedProduct(maker="Bandai", name="RX-78-2", scale="1/144")

    def test_save_then_find_by_raw(self, product_repo):
        product_repo.save_product("HG RX-78", "hgrx78", self.RX78)
        assert product_repo.find_by_raw_names(["HG RX-78", "missing"]) == {"HG RX-78": self.RX78}
        assert product_repo.find_by_raw_names([]) == {}

    def test_save_upserts_on_raw_name(self, product_repo):
        first = product_repo.save_product("HG RX-78", "hgrx78", ParsedProduct(name="old"))
        second = product_repo.save_product("HG RX-78", "hgrx78", self.RX78)

        assert first == second
        assert product_repo.find_by_raw_names(["HG RX-78"])["HG RX-78"] == self.RX78

    def test_normalized_lookup_oldest_wins(self, product_repo):
        product_repo.save_product("HG RX-78", "hgrx78", self.RX78)
        product_repo.save_product("hg rx78", "hgrx78", ParsedProduct(name="newer"))

        assert product_repo.find_by_normalized_names(["hgrx78", ""]) == {"hgrx78": self.RX78}

    def test_unresolved_names(self, order_repo, product_repo):
        order_repo.save_order(
            OrderInfo("A-1", items=(OrderLine("Zaku"), OrderLine("HG RX-78"), OrderLine("Dom"))),
            shop_domain="hobby.example",
        )
        order_repo.save_order(
            OrderInfo("A-2", items=(OrderLine("Zaku"), OrderLine("hg rx 78"))),
            shop_domain="hobby.example",
        )
        product_repo.save_product("HG RX-78", normalize_product_name("HG RX-78"), self.RX78)

        assert product_repo.list_unresolved_product_names() == ["Dom", "Zaku"]
        assert product_repo.list_unresolved_product_names(limit=1) == ["Dom"]


# =============================================================================
# Shop settings
# =============================================================================


class TestShopSettingsRepository:
    def test_enabled_only(self, shop_settings_repo):
        first = shop_settings_repo.add(
            "Hobby", "orders@hobby.example", "confirm", subject_filters=["Order", "注文"],
        )
        second = shop_settings_repo.add("Other", "a@other.example", "other")
        shop_settings_repo.set_enabled(second, False)

        enabled = shop_settings_repo.get_enabled()

        assert [s.id for s in enabled] == [first]
        assert enabled[0].subject_filters == ("Order", "注文")
        assert len(shop_settings_repo.list_all()) == 2

    def test_no_filters_is_empty_tuple(self, shop_settings_repo):
        shop_settings_repo.add("Hobby", "orders@hobby.example", "confirm")
        assert shop_settings_repo.get_enabled()[0].subject_filters == ()


# =============================================================================
# Error wrapping
# =============================================================================


class TestBaseRepository:
    def test_driver_errors_become_repository_error(self, session_factory):
        class ExplodingRepository(BaseRepository):
            def explode(self):
                with self._scope("lookup"):
                    raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        with pytest.raises(RepositoryError) as exc_info:
            ExplodingRepository(session_factory).explode()

        assert exc_info.value.operation == "lookup"
        assert isinstance(exc_info.value.__cause__, OperationalError)
