# Overview: Pytest coverage for the HTTP surface of imports and inventory.

"""
Route Tests

Exercises the JSON contract end to end through the Flask test client:
tenant header enforcement, the session pipeline, extraction error mapping,
adjustments and ledger reads.
"""

import base64
import io

import pytesseract
from PIL import Image

from stockline.models import Product
from stockline.services import extractors


CSV_BODY = b"Product Name,SKU,Qty,Price\nWidget,WID-9,2,100.00\nGadget,,1,50\n"


def _png_b64():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), "white").save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _new_session(client, headers):
    response = client.post("/api/imports/sessions", headers=headers)
    assert response.status_code == 201
    return response.get_json()["session_id"]


class TestTenantContext:

    def test_missing_tenant_header(self, client, db_session):
        response = client.post("/api/imports/sessions")
        assert response.status_code == 401
        assert response.get_json() == {"success": False, "error": "Tenant context required"}

    def test_overlong_tenant_header(self, client, db_session):
        response = client.post("/api/imports/sessions", headers={"X-Tenant-ID": "t" * 65})
        assert response.status_code == 400

    def test_session_invisible_to_other_tenant(self, client, db_session, tenant_headers):
        sid = _new_session(client, tenant_headers)
        response = client.get(f"/api/imports/sessions/{sid}/preview", headers={"X-Tenant-ID": "globex"})
        assert response.status_code == 404


class TestImportPipeline:

    def test_upload_preview_commit(self, client, db_session, tenant_headers):
        sid = _new_session(client, tenant_headers)

        upload = client.post(
            f"/api/imports/sessions/{sid}/files",
            data={"files": [(io.BytesIO(CSV_BODY), "stock.csv")]},
            headers=tenant_headers,
            content_type="multipart/form-data",
        )
        assert upload.status_code == 200
        body = upload.get_json()
        assert body["success"] is True
        assert body["parsed_rows"] == 2
        assert body["source_type"] == "csv"

        preview = client.get(f"/api/imports/sessions/{sid}/preview", headers=tenant_headers).get_json()
        assert preview["status"] == "parsed"
        assert [r["name"] for r in preview["rows"]] == ["Widget", "Gadget"]

        commit = client.post(
            f"/api/imports/sessions/{sid}/commit",
            json={"strategy": "create", "default_tax": 5},
            headers=tenant_headers,
        )
        assert commit.status_code == 200
        summary = commit.get_json()
        assert summary["success"] is True
        assert summary["created"] == 2
        assert summary["stock_added"] == 3
        assert summary["skus_generated"] == 1

        widget = db_session.query(Product).filter_by(tenant_id="acme", sku="WID-9").one()
        assert widget.tax_rate_bps == 500

        stock = client.get(f"/api/inventory/{widget.id}", headers=tenant_headers).get_json()
        assert stock["stock"]["quantity"] == 2

        ledger = client.get(f"/api/inventory/{widget.id}/ledger", headers=tenant_headers).get_json()
        entry = ledger["entries"][0]
        assert (entry["type"], entry["quantity_before"], entry["quantity_after"]) == ("import", 0, 2)
        assert entry["actor"] == "user-1"

        again = client.post(f"/api/imports/sessions/{sid}/commit", json={}, headers=tenant_headers)
        assert again.status_code == 409

    def test_upload_without_files(self, client, db_session, tenant_headers):
        sid = _new_session(client, tenant_headers)
        response = client.post(
            f"/api/imports/sessions/{sid}/files", data={}, headers=tenant_headers,
            content_type="multipart/form-data",
        )
        assert response.status_code == 400

    def test_edit_rows_then_commit(self, client, db_session, tenant_headers):
        sid = _new_session(client, tenant_headers)
        edited = client.put(
            f"/api/imports/sessions/{sid}/rows",
            json={"rows": [{"name": "Desk Lamp", "unit_price": "19.99", "quantity": 3}, {"notes": "blank"}]},
            headers=tenant_headers,
        )
        assert edited.status_code == 200
        assert len(edited.get_json()["rows"]) == 1

        commit = client.post(f"/api/imports/sessions/{sid}/commit", json={}, headers=tenant_headers)
        assert commit.get_json()["created"] == 1
        lamp = db_session.query(Product).filter_by(name="Desk Lamp").one()
        assert lamp.price_cents == 1999

    def test_invalid_commit_options(self, client, db_session, tenant_headers):
        sid = _new_session(client, tenant_headers)
        response = client.post(
            f"/api/imports/sessions/{sid}/commit", json={"strategy": "replace"}, headers=tenant_headers,
        )
        assert response.status_code == 400
        assert "strategy" in response.get_json()["error"]

    def test_commit_empty_session(self, client, db_session, tenant_headers):
        sid = _new_session(client, tenant_headers)
        response = client.post(f"/api/imports/sessions/{sid}/commit", json={}, headers=tenant_headers)
        assert response.status_code == 400
        assert response.get_json()["error"] == "No rows to commit"

    def test_delete_session(self, client, db_session, tenant_headers):
        sid = _new_session(client, tenant_headers)
        assert client.delete(f"/api/imports/sessions/{sid}", headers=tenant_headers).status_code == 200
        assert client.get(f"/api/imports/sessions/{sid}", headers=tenant_headers).status_code == 404

    def test_unknown_session(self, client, db_session, tenant_headers):
        response = client.get("/api/imports/sessions/doesnotexist", headers=tenant_headers)
        assert response.status_code == 404
        assert response.get_json()["success"] is False


class TestExtractEndpoint:

    def test_local_ocr_appends_to_session(self, client, db_session, tenant_headers, monkeypatch):
        monkeypatch.setattr(extractors, "ocr_image", lambda image, language="eng": ("2 x Widget @ 100.00", 90.0))
        sid = _new_session(client, tenant_headers)

        response = client.post(
            "/api/imports/extract",
            json={"mode": "local", "image": f"data:image/png;base64,{_png_b64()}", "session_id": sid},
            headers=tenant_headers,
        )
        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["count"] == 1

        preview = client.get(f"/api/imports/sessions/{sid}/preview", headers=tenant_headers).get_json()
        assert preview["rows"][0]["name"] == "Widget"
        assert preview["source_type"] == "image_ocr"

        usage = client.get("/api/imports/ai-usage", headers=tenant_headers).get_json()
        assert usage["stats"]["total_calls"] == 1

    def test_local_engine_missing(self, client, db_session, tenant_headers, monkeypatch):
        def _missing(image, language="eng"):
            raise pytesseract.TesseractNotFoundError()

        monkeypatch.setattr(extractors, "ocr_image", _missing)
        response = client.post(
            "/api/imports/extract", json={"mode": "local", "image": _png_b64()}, headers=tenant_headers,
        )
        assert response.status_code == 503
        assert response.get_json()["error_code"] == "engine_unavailable"

    def test_cloud_without_keys(self, client, db_session, tenant_headers, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        response = client.post(
            "/api/imports/extract", json={"mode": "cloud", "image": _png_b64()}, headers=tenant_headers,
        )
        assert response.status_code == 400
        body = response.get_json()
        assert body["success"] is False
        assert body["error_code"] == "not_configured"
        assert body["products"] == []

    def test_bad_base64(self, client, db_session, tenant_headers):
        response = client.post(
            "/api/imports/extract", json={"mode": "local", "image": "***"}, headers=tenant_headers,
        )
        assert response.status_code == 400

    def test_unknown_mode(self, client, db_session, tenant_headers):
        response = client.post(
            "/api/imports/extract", json={"mode": "magic", "image": _png_b64()}, headers=tenant_headers,
        )
        assert response.status_code == 400


class TestInventoryRoutes:

    def test_adjust_and_reject_negative(self, client, db_session, tenant_headers, product):
        ok = client.post(
            "/api/inventory/adjust", json={"product_id": product.id, "quantity_change": 3}, headers=tenant_headers,
        )
        assert ok.status_code == 200
        assert ok.get_json()["new"] == 3

        rejected = client.post(
            "/api/inventory/adjust", json={"product_id": product.id, "quantity_change": -5}, headers=tenant_headers,
        )
        assert rejected.status_code == 400
        assert rejected.get_json()["error"] == "adjustment would make on-hand negative"

        stock = client.get(f"/api/inventory/{product.id}", headers=tenant_headers).get_json()
        assert stock["stock"]["quantity"] == 3

    def test_adjust_validation(self, client, db_session, tenant_headers, product):
        for payload in ({"product_id": product.id, "quantity_change": 0},
                        {"product_id": product.id, "quantity_change": 1.5},
                        {"quantity_change": 2}):
            response = client.post("/api/inventory/adjust", json=payload, headers=tenant_headers)
            assert response.status_code == 400

    def test_adjust_unknown_product(self, client, db_session, tenant_headers):
        response = client.post(
            "/api/inventory/adjust", json={"product_id": 4242, "quantity_change": 1}, headers=tenant_headers,
        )
        assert response.status_code == 404

    def test_ledger_bad_since(self, client, db_session, tenant_headers, product):
        response = client.get(f"/api/inventory/{product.id}/ledger?since=yesterday", headers=tenant_headers)
        assert response.status_code == 400


class TestTemplateAndHealth:

    def test_template_download(self, client):
        response = client.get("/api/imports/template")
        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert "inventory_import_template.csv" in response.headers["Content-Disposition"]
        header = response.get_data(as_text=True).splitlines()[0]
        assert header.startswith("name,sku,barcode,category")

    def test_health_degraded_without_ocr(self, client, db_session, monkeypatch):
        def _missing():
            raise pytesseract.TesseractNotFoundError()

        monkeypatch.setattr(pytesseract, "get_tesseract_version", _missing)
        response = client.get("/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["database"]["status"] == "healthy"
