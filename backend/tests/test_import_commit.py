# Overview: Pytest coverage for the import commit engine.

"""
Import Commit Tests

Covers the create and upsert strategies, identifier generation, per-row
isolation of failures, whole-batch rollback on infrastructure errors and
session state after commit.
"""

import pytest
from sqlalchemy.exc import OperationalError

from stockline.extensions import db
from stockline.models import InventoryRecord, LedgerEntry, Product
from stockline.services import events, import_service
from stockline.services.import_service import CommitError, commit_import
from stockline.services.normalizer import CandidateRow
from stockline.services.session_service import ImportSessionError
from stockline.services.text_parser import parse_text
from stockline.time_utils import utcnow
from stockline.validation import (
    AutoBarcodeConfig,
    AutoSkuConfig,
    CommitOptions,
    ValidationError,
    parse_commit_options,
)


TENANT = "acme"


def _ledger(product_id):
    return (
        db.session.query(LedgerEntry)
        .filter_by(tenant_id=TENANT, product_id=product_id)
        .order_by(LedgerEntry.id.asc())
        .all()
    )


class TestCreateStrategy:

    def test_receipt_text_to_stock(self, db_session):
        """Two OCR lines become two products with one import entry each."""
        rows = parse_text("2 x Widget @ 100.00\nGadget - 50")

        summary = commit_import(tenant_id=TENANT, options=CommitOptions(strategy="create"), rows=rows)

        assert summary.created == 2
        assert summary.updated == 0
        assert summary.stock_added == 3
        assert summary.warnings == []

        widget = db_session.query(Product).filter_by(tenant_id=TENANT, name="Widget").one()
        gadget = db_session.query(Product).filter_by(tenant_id=TENANT, name="Gadget").one()
        assert widget.price_cents == 10000
        assert gadget.price_cents == 5000

        widget_entries = _ledger(widget.id)
        gadget_entries = _ledger(gadget.id)
        assert [(e.entry_type, e.quantity_before, e.quantity_after) for e in widget_entries] == [("import", 0, 2)]
        assert [(e.entry_type, e.quantity_before, e.quantity_after) for e in gadget_entries] == [("import", 0, 1)]

        record = db_session.query(InventoryRecord).filter_by(product_id=widget.id).one()
        assert record.quantity == 2
        assert record.sku == widget.sku
        assert record.last_received_at is not None

    def test_generated_skus_unique_within_batch(self, db_session):
        rows = [{"name": "Widget", "category": "Tools"} for _ in range(5)]

        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), rows=rows)

        skus = [p["sku"] for p in summary.products]
        base = f"TOO-WID-{utcnow():%y%m}"
        assert skus == [base, f"{base}-1", f"{base}-2", f"{base}-3", f"{base}-4"]
        assert summary.skus_generated == 5

    def test_explicit_sku_collision_gets_suffix(self, db_session, product):
        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(strategy="create"),
            rows=[{"sku": "wid-001", "name": "Widget Copy"}],
        )
        assert summary.created == 1
        assert summary.products[0]["sku"] == "WID-001-1"
        assert summary.skus_generated == 0

    def test_barcode_defaults_to_sku(self, db_session):
        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), rows=[{"sku": "LMP-1", "name": "Lamp"}])
        lamp = db_session.get(Product, summary.products[0]["product_id"])
        assert lamp.barcode == "LMP-1"
        assert summary.barcodes_generated == 0

    def test_placeholder_name_and_defaults(self, db_session):
        options = CommitOptions(default_tax=18, default_category="General")
        summary = commit_import(
            tenant_id=TENANT,
            options=options,
            rows=[{"sku": "X-1"}, {"sku": "X-2", "description": "Brass hinge", "tax": "5%"}],
        )
        first = db_session.get(Product, summary.products[0]["product_id"])
        second = db_session.get(Product, summary.products[1]["product_id"])
        assert first.name == "Unnamed Product"
        assert first.category == "General"
        assert first.tax_rate_bps == 1800
        assert first.price_cents == 0
        assert second.name == "Brass hinge"
        assert second.tax_rate_bps == 500

    def test_reorder_fields_seed_inventory_record(self, db_session):
        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(),
            rows=[{"name": "Lamp", "reorder point": 5, "reorder qty": 20}],
        )
        record = db_session.query(InventoryRecord).filter_by(product_id=summary.products[0]["product_id"]).one()
        assert (record.quantity, record.reorder_point, record.reorder_quantity) == (0, 5, 20)

    def test_zero_quantity_writes_no_ledger_entry(self, db_session):
        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), rows=[{"name": "Lamp", "qty": 0}])
        assert summary.stock_added == 0
        assert _ledger(summary.products[0]["product_id"]) == []

    def test_money_rounds_half_up(self, db_session):
        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(),
            rows=[{"name": "Lamp", "price": "10.005", "cost": "4.994"}],
        )
        lamp = db_session.get(Product, summary.products[0]["product_id"])
        assert lamp.price_cents == 1001
        assert lamp.cost_cents == 499


class TestAutoIdentifiers:

    def test_auto_sku_and_barcode(self, db_session):
        options = parse_commit_options({
            "auto_sku": {"enabled": True, "prefix": "INV", "includeCategory": True},
            "auto_barcode": {"enabled": True, "prefix": "200", "format": "EAN-13"},
        })
        summary = commit_import(
            tenant_id=TENANT,
            options=options,
            rows=[
                {"name": "Hammer", "category": "Tools"},
                {"name": "Lamp", "barcode": "8901234567890"},
            ],
        )
        hammer = db_session.get(Product, summary.products[0]["product_id"])
        lamp = db_session.get(Product, summary.products[1]["product_id"])
        assert hammer.sku == "INV-TOO-0001"
        assert hammer.barcode == "200000000001"
        assert lamp.sku == "INV-0002"
        assert lamp.barcode == "8901234567890"
        assert summary.skus_generated == 2
        assert summary.barcodes_generated == 1

    def test_auto_sku_collision_still_unique(self, db_session, make_product):
        make_product(sku="SKU-0001")
        options = CommitOptions(auto_sku=AutoSkuConfig(enabled=True), auto_barcode=AutoBarcodeConfig())
        summary = commit_import(tenant_id=TENANT, options=options, rows=[{"name": "Lamp"}])
        assert summary.products[0]["sku"] == "SKU-0001-1"


class TestUpsertStrategy:

    def test_updates_existing_by_sku(self, db_session, product):
        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(strategy="upsert"),
            rows=[{"sku": "wid-001", "price": "12.50", "qty": 4}],
        )
        assert summary.created == 0
        assert summary.updated == 1
        assert summary.stock_added == 4

        db_session.refresh(product)
        assert product.price_cents == 1250
        assert product.name == "Widget"
        entries = _ledger(product.id)
        assert [(e.quantity_before, e.quantity_after) for e in entries] == [(0, 4)]

    def test_stock_is_incremented_not_replaced(self, db_session, product):
        options = CommitOptions(strategy="upsert")
        commit_import(tenant_id=TENANT, options=options, rows=[{"sku": "WID-001", "qty": 4}])
        commit_import(tenant_id=TENANT, options=options, rows=[{"sku": "WID-001", "qty": 3}])

        record = db_session.query(InventoryRecord).filter_by(product_id=product.id).one()
        assert record.quantity == 7
        assert [(e.quantity_before, e.quantity_after) for e in _ledger(product.id)] == [(0, 4), (4, 7)]

    def test_unknown_sku_is_created(self, db_session):
        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(strategy="upsert"),
            rows=[{"sku": "NEW-1", "name": "New"}],
        )
        assert summary.created == 1

    def test_other_tenant_sku_not_matched(self, db_session, make_product):
        make_product(sku="WID-001", tenant_id="globex")
        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(strategy="upsert"),
            rows=[{"sku": "WID-001", "name": "Widget"}],
        )
        assert summary.created == 1
        assert summary.products[0]["sku"] == "WID-001"


class TestFailureIsolation:

    def test_bad_row_becomes_warning(self, db_session):
        rows = [{"name": f"Item {i}", "price": "10"} for i in range(1, 6)]
        rows[2]["price"] = "-5"

        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), rows=rows)

        assert summary.created == 4
        assert summary.warnings == ["Row failed: Item 3 -> unit_price cannot be negative"]
        names = {p.name for p in db_session.query(Product).filter_by(tenant_id=TENANT)}
        assert names == {"Item 1", "Item 2", "Item 4", "Item 5"}

    def test_negative_quantity_row_rejected(self, db_session):
        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(),
            rows=[{"name": "Lamp", "qty": -2}, {"name": "Desk", "qty": 1}],
        )
        assert summary.created == 1
        assert summary.warnings == ["Row failed: Lamp -> quantity cannot be negative"]
        assert db_session.query(Product).filter_by(name="Lamp").count() == 0

    def test_infrastructure_error_rolls_back_everything(self, db_session, monkeypatch):
        real_apply = import_service.apply_stock_delta
        calls = {"n": 0}

        def flaky_apply(**kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OperationalError("UPDATE inventory_records", {}, Exception("database is locked"))
            return real_apply(**kwargs)

        monkeypatch.setattr(import_service, "apply_stock_delta", flaky_apply)

        with pytest.raises(CommitError):
            commit_import(
                tenant_id=TENANT,
                options=CommitOptions(),
                rows=[{"name": "Lamp", "qty": 1}, {"name": "Desk", "qty": 1}, {"name": "Chair", "qty": 1}],
            )

        assert db_session.query(Product).count() == 0
        assert db_session.query(LedgerEntry).count() == 0
        assert db_session.query(InventoryRecord).count() == 0

    def test_empty_rows_rejected(self, db_session):
        with pytest.raises(ValidationError):
            commit_import(tenant_id=TENANT, options=CommitOptions(), rows=[])

    def test_nameless_row_gets_placeholder(self, db_session):
        """Missing name alone never rejects a row."""
        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), rows=[{"price": "4"}])
        assert summary.created == 1
        assert db_session.query(Product).one().name == "Unnamed Product"


class TestSessionCommit:

    def test_session_rows_committed_once(self, db_session, session_store):
        sid = session_store.create_session(TENANT)
        session_store.append_rows(TENANT, sid, [CandidateRow(name="Lamp", quantity=2)])

        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), session_id=sid, sessions=session_store)
        assert summary.created == 1

        state = session_store.get_session(TENANT, sid)
        assert state["status"] == "committed"
        assert state["result"]["created"] == 1

        entry = _ledger(summary.products[0]["product_id"])[0]
        assert entry.reference == f"import:{sid}"

        with pytest.raises(ImportSessionError):
            commit_import(tenant_id=TENANT, options=CommitOptions(), session_id=sid, sessions=session_store)
        assert db_session.query(Product).count() == 1

    def test_override_rows_replace_staged_rows(self, db_session, session_store):
        sid = session_store.create_session(TENANT)
        session_store.append_rows(TENANT, sid, [CandidateRow(name="Lamp")])

        summary = commit_import(
            tenant_id=TENANT,
            options=CommitOptions(),
            session_id=sid,
            rows=[{"name": "Desk"}],
            sessions=session_store,
        )
        assert [p.name for p in db_session.query(Product).all()] == ["Desk"]
        assert summary.created == 1


class TestEvents:

    def test_events_emitted_after_commit(self, db_session, product):
        received = []

        def on_created(tenant_id, event):
            received.append(("created", tenant_id, event["data"]["name"]))

        def on_stock(tenant_id, event):
            received.append(("stock", tenant_id, event["data"]["quantity_change"]))

        events.product_created.connect(on_created)
        events.stock_adjusted.connect(on_stock)
        try:
            commit_import(
                tenant_id=TENANT,
                options=CommitOptions(strategy="upsert"),
                rows=[{"name": "Lamp", "qty": 2}, {"sku": "WID-001", "price": 11}],
            )
        finally:
            events.product_created.disconnect(on_created)
            events.stock_adjusted.disconnect(on_stock)

        assert ("created", TENANT, "Lamp") in received
        assert ("stock", TENANT, 2) in received
        assert len(received) == 2

    def test_failing_subscriber_does_not_break_commit(self, db_session):
        def broken(tenant_id, event):
            raise RuntimeError("webhook down")

        events.product_created.connect(broken)
        try:
            summary = commit_import(tenant_id=TENANT, options=CommitOptions(), rows=[{"name": "Lamp"}])
        finally:
            events.product_created.disconnect(broken)

        assert summary.created == 1
        assert db_session.query(Product).count() == 1


class TestConcurrentSessionCommit:

    def test_commit_started_while_another_runs_writes_nothing(self, db_session, session_store, monkeypatch):
        sid = session_store.create_session(TENANT)
        session_store.append_rows(TENANT, sid, [CandidateRow(name="Lamp", quantity=2)])
        real_apply = import_service._apply_rows
        rejected = []

        def racing_apply(**kwargs):
            # A second caller arrives while the first is inside its transaction
            try:
                commit_import(tenant_id=TENANT, options=CommitOptions(), session_id=sid, sessions=session_store)
            except ImportSessionError as exc:
                rejected.append(str(exc))
            return real_apply(**kwargs)

        monkeypatch.setattr(import_service, "_apply_rows", racing_apply)

        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), session_id=sid, sessions=session_store)

        assert rejected == ["Import session is being committed"]
        assert summary.created == 1
        assert db_session.query(Product).count() == 1
        assert db_session.query(LedgerEntry).count() == 1
        assert session_store.get_session(TENANT, sid)["status"] == "committed"

    def test_failed_commit_reopens_session(self, db_session, session_store, monkeypatch):
        sid = session_store.create_session(TENANT)
        session_store.append_rows(TENANT, sid, [CandidateRow(name="Lamp", quantity=2)])

        def locked(**kwargs):
            raise OperationalError("UPDATE inventory_records", {}, Exception("database is locked"))

        monkeypatch.setattr(import_service, "apply_stock_delta", locked)
        with pytest.raises(CommitError):
            commit_import(tenant_id=TENANT, options=CommitOptions(), session_id=sid, sessions=session_store)
        assert session_store.get_session(TENANT, sid)["status"] == "parsed"

        monkeypatch.undo()
        summary = commit_import(tenant_id=TENANT, options=CommitOptions(), session_id=sid, sessions=session_store)
        assert summary.created == 1

    def test_empty_session_commit_reopens_session(self, db_session, session_store):
        sid = session_store.create_session(TENANT)
        with pytest.raises(ValidationError):
            commit_import(tenant_id=TENANT, options=CommitOptions(), session_id=sid, sessions=session_store)
        assert session_store.get_session(TENANT, sid)["status"] == "created"
