import io
import json

import pytest
from pypdf import PdfReader

from app.assembly import _fit_text_size, assemble_digital, assemble_wet, percent_to_pdf
from app.errors import AssemblyFailed
from app.geometry import LayoutField
from app.utils import sha256_bytes

from conftest import SIGNATURE_DATA_URI, make_encrypted_pdf, make_pdf, make_png

AUDIT = {
    "request_id": 7,
    "title": "Contract · CASE-1",
    "mode": "digital_dual",
    "advisor_signed_at": "2026-01-01T10:00:00",
    "customer_signed_at": "2026-01-01T11:00:00",
    "sha256_sources": {"contract.pdf": "ab" * 32},
    "events": [{"at": "2026-01-01T10:00:00", "event": "signed", "actor_role": "advisor", "ip": "10.0.0.1",
                "hash": "cd" * 32}],
}

FIELDS = [
    LayoutField(id="adv", owner="advisor", type="signature", x=10, y=60, width=18, height=6),
    LayoutField(id="name", owner="customer", type="text", x=10, y=10, width=40, height=10),
    LayoutField(id="ok", owner="customer", type="checkbox", x=80, y=10, width=4, height=8),
    LayoutField(id="late", owner="customer", type="text", page=5, x=10, y=10, width=40, height=10),
]
VALUES = {
    "advisor": {"adv": SIGNATURE_DATA_URI},
    "customer": {"name": "Jane Doe", "ok": True, "late": "never drawn"},
}


def test_percent_geometry_maps_from_top_left():
    field = LayoutField(id="f", owner="advisor", type="signature", x=10, y=10, width=20, height=5)
    assert percent_to_pdf((0, 0, 600, 800), field) == pytest.approx((60, 680, 120, 40))
    assert percent_to_pdf((0, 0, 600, 800), field, rotation=180) == pytest.approx((420, 80, 120, 40))
    assert percent_to_pdf((10, 20, 600, 800), field) == pytest.approx((70, 700, 120, 40))


def test_long_text_shrinks_to_floor():
    assert _fit_text_size("short", 300, 20) == 12
    assert _fit_text_size("a much longer value than the box can hold " * 3, 40, 20) == 7


def test_digital_assembly_stamps_values_and_appends_audit():
    artifact = assemble_digital(make_pdf(pages=2, size=(600, 800)), "application/pdf", FIELDS, VALUES, AUDIT)
    reader = PdfReader(io.BytesIO(artifact.pdf))
    assert len(reader.pages) >= 3
    assert "Jane Doe" in reader.pages[0].extract_text()
    assert "Audit Log" in reader.pages[2].extract_text()
    assert artifact.sha256 == sha256_bytes(artifact.pdf)

    audit = json.loads(artifact.audit_json)
    assert audit["sha256_final"] == artifact.sha256
    assert audit["request_id"] == 7
    assert "sealed_at" in audit


def test_image_original_is_placed_on_a4():
    artifact = assemble_digital(make_png((400, 300)), "image/png", FIELDS[:1], VALUES, AUDIT)
    first = PdfReader(io.BytesIO(artifact.pdf)).pages[0]
    assert float(first.mediabox.width) == pytest.approx(595.2756, abs=0.01)


def test_encrypted_original_needs_the_password():
    data = make_encrypted_pdf("secret")
    with pytest.raises(AssemblyFailed) as exc:
        assemble_digital(data, "application/pdf", [], {}, AUDIT)
    assert exc.value.code == "assembly_failed"

    artifact = assemble_digital(data, "application/pdf", [], {}, AUDIT, password="secret")
    assert len(PdfReader(io.BytesIO(artifact.pdf)).pages) == 2


def test_corrupt_original_fails_assembly():
    with pytest.raises(AssemblyFailed):
        assemble_digital(b"%PDF-1.4 garbage", "application/pdf", FIELDS, VALUES, AUDIT)


def test_wet_assembly_bundles_scans():
    scans = [(make_pdf(pages=2), "application/pdf"), (make_png(), "image/png")]
    artifact = assemble_wet(scans, {**AUDIT, "mode": "wet_only"})
    assert len(PdfReader(io.BytesIO(artifact.pdf)).pages) == 4
    assert json.loads(artifact.audit_json)["mode"] == "wet_only"


def test_wet_assembly_without_scans_fails():
    with pytest.raises(AssemblyFailed):
        assemble_wet([], AUDIT)
