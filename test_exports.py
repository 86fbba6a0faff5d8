import exports


def test_rows_to_csv_writes_header_then_rows():
    text = exports.rows_to_csv(["Name", "Score"], [["Ama", 80], ["Kofi", 72.5]])
    assert text.splitlines() == ["Name,Score", "Ama,80", "Kofi,72.5"]


def test_report_card_pdf_renders_positions_as_ordinals(monkeypatch):
    rendered = {}

    def fake_render_pdf(template_name, **context):
        rendered.update(context, template=template_name)
        return b"%PDF"

    monkeypatch.setattr(exports, "get_report_card", lambda school_id, report_id: {"id": report_id, "report_code": "RPT00000004", "position": 2})
    monkeypatch.setattr(exports, "get_school", lambda school_id: {"id": school_id, "name": "Hillside"})
    monkeypatch.setattr(exports, "render_pdf", fake_render_pdf)

    filename, pdf = exports.report_card_pdf(1, 4)

    assert filename == "report_card_RPT00000004.pdf"
    assert pdf == b"%PDF"
    assert rendered["template"] == "pdf/report_card.html"
    assert rendered["ordinal"](rendered["card"]["position"]) == "2nd"
    assert rendered["ordinal"](13) == "13th"
