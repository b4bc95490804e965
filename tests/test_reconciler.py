"""Unit tests for join(): matching deals to products and building the write-set.

Pure function tests -- no stores and no CRM.
"""

from __future__ import annotations

from src.crm_mirror.catalog.reconciler import join
from src.crm_mirror.catalog.schemas import (
    ContactRecord,
    DealRecord,
    DealWithLineItems,
    LineItem,
    ProductRecord,
)


# ── Helpers ────────────────────────────────────────────────────────────────


def _product(product_id: str, offer_ids: list[str] | None = None) -> ProductRecord:
    return ProductRecord(
        id=product_id, name=f"Dress {product_id}", offer_ids=offer_ids or []
    )


def _deal(deal_id: str, refs: list[str], contact_id: str | None = "5") -> DealWithLineItems:
    return DealWithLineItems(
        deal=DealRecord(id=deal_id, title=f"Booking {deal_id}", contact_id=contact_id),
        line_items=[LineItem(product_id=ref) for ref in refs],
    )


CONTACT = ContactRecord(id="5", name="Aigerim", last_name="Sadykova")


# ── Matching ───────────────────────────────────────────────────────────────


class TestMatching:
    def test_matches_by_product_id(self):
        result = join([_product("101")], [_deal("7", ["101"])], [CONTACT])

        assert [d.id for d in result.view[0].deals] == ["7"]
        assert [(p.product_id, p.deal_id) for p in result.write_set.links] == [("101", "7")]

    def test_matches_by_offer_id(self):
        result = join([_product("101", offer_ids=["501"])], [_deal("7", ["501"])], [CONTACT])

        assert [d.id for d in result.view[0].deals] == ["7"]
        assert result.write_set.links[0].product_id == "101"

    def test_matches_any_of_several_offers(self):
        result = join(
            [_product("101", offer_ids=["501", "502"])],
            [_deal("7", ["502"]), _deal("8", ["501"])],
            [CONTACT],
        )

        assert [d.id for d in result.view[0].deals] == ["7", "8"]

    def test_deal_listed_once_when_both_ids_match(self):
        result = join(
            [_product("101", offer_ids=["501"])],
            [_deal("7", ["101", "501", "101"])],
            [CONTACT],
        )

        assert len(result.view[0].deals) == 1
        assert len(result.write_set.links) == 1

    def test_deal_spanning_products(self):
        result = join(
            [_product("101"), _product("102")],
            [_deal("7", ["101", "102"])],
            [CONTACT],
        )

        assert [len(p.deals) for p in result.view] == [1, 1]
        assert len(result.write_set.deals) == 1

    def test_unmatched_deal_not_written(self):
        result = join([_product("101")], [_deal("7", ["999"])], [CONTACT])

        assert result.view[0].deals == []
        assert result.write_set.deals == []
        assert result.write_set.links == []

    def test_deals_keep_input_order(self):
        result = join(
            [_product("101")],
            [_deal("9", ["101"]), _deal("7", ["101"]), _deal("8", ["101"])],
            [CONTACT],
        )

        assert [d.id for d in result.view[0].deals] == ["9", "7", "8"]


# ── Contacts ───────────────────────────────────────────────────────────────


class TestContacts:
    def test_contact_embedded(self):
        result = join([_product("101")], [_deal("7", ["101"])], [CONTACT])

        assert result.view[0].deals[0].contact == CONTACT
        assert result.unresolved_contacts == 0

    def test_unresolved_contact_is_none(self):
        result = join([_product("101")], [_deal("7", ["101"], contact_id="404")], [])

        assert result.view[0].deals[0].contact is None
        assert result.unresolved_contacts == 1
        # the deal itself is still cached
        assert [d.id for d in result.write_set.deals] == ["7"]

    def test_deal_without_contact(self):
        result = join([_product("101")], [_deal("7", ["101"], contact_id=None)], [])

        assert result.view[0].deals[0].contact is None
        assert result.unresolved_contacts == 1

    def test_resolves_against_cached_contacts(self):
        result = join(
            [_product("101")],
            [_deal("7", ["101"])],
            [],
            cached_contacts=[CONTACT],
        )

        assert result.view[0].deals[0].contact.name == "Aigerim"
        assert result.write_set.contacts == []

    def test_all_fetched_contacts_written(self):
        other = ContactRecord(id="6", name="Dana")
        result = join([], [], [CONTACT, other])

        assert [c.id for c in result.write_set.contacts] == ["5", "6"]


# ── Cached Products ────────────────────────────────────────────────────────


class TestCachedProducts:
    def test_new_deal_on_cached_product_is_linked(self):
        result = join(
            [],
            [_deal("7", ["501"])],
            [CONTACT],
            cached_products=[_product("101", offer_ids=["501"])],
        )

        assert result.view == []
        assert result.write_set.products == []
        assert [(p.product_id, p.deal_id) for p in result.write_set.links] == [("101", "7")]
        assert [d.id for d in result.write_set.deals] == ["7"]

    def test_fetched_product_wins_over_cached(self):
        result = join(
            [_product("101", offer_ids=["502"])],
            [_deal("7", ["501"])],
            [CONTACT],
            cached_products=[_product("101", offer_ids=["501"])],
        )

        # the stale cached offer id no longer matches
        assert result.write_set.links == []


def test_empty_inputs():
    result = join([], [], [])

    assert result.view == []
    assert result.write_set.is_empty()
    assert result.unresolved_contacts == 0
