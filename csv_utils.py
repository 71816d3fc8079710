import csv
import io
from typing import Iterable, Any, Sequence, Callable, Optional
from fastapi.responses import StreamingResponse

def decode_csv_bytes(data: bytes) -> str:
    # spreadsheet exports: UTF-8 with BOM first, then plain UTF-8, then Windows-1252
    for enc in ("utf-8-sig", "utf-8", "cp1252"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


HEADER_ALIASES = {
    "name": "name",
    "item": "name",
    "item name": "name",
    "category": "category",
    "type": "category",
    "sku": "sku",
    "barcode": "sku",
    "quantity": "total_quantity",
    "qty": "total_quantity",
    "total": "total_quantity",
    "total quantity": "total_quantity",
    "total_quantity": "total_quantity",
    "location": "location",
    "storage": "location",
    "description": "description",
    "notes": "notes",
    "note": "notes",
    "requires approval": "requires_approval",
    "requires_approval": "requires_approval",
}


def normalize_header(h: str) -> str:
    h = (h or "").strip()
    key = " ".join(h.lower().replace("-", " ").split())
    return HEADER_ALIASES.get(key, HEADER_ALIASES.get(key.replace(" ", "_"), h))

def items_to_csv_response(
    items: Iterable[Any],
    *,
    filename: str = "items_export.csv",
    columns: Optional[Sequence[tuple[str, Callable[[Any], str]]]] = None,
) -> StreamingResponse:
    """
    Stream ``items`` as a CSV download. Works with ORM rows or pydantic
    models alike, anything with attribute access.
    """

    if columns is None:
        columns = [
            ("id", lambda i: str(getattr(i, "id", ""))),
            ("name", lambda i: str(getattr(i, "name", ""))),
            ("category", lambda i: str(getattr(i, "category", "") or "")),
            ("sku", lambda i: str(getattr(i, "sku", "") or "")),
            ("qr_code", lambda i: str(getattr(i, "qr_code", "") or "")),
            ("location", lambda i: str(getattr(i, "location", "") or "")),
            ("total_quantity", lambda i: str(getattr(i, "total_quantity", 0))),
            ("available_quantity", lambda i: str(getattr(i, "available_quantity", 0))),
            ("status", lambda i: str(getattr(i, "status", ""))),
            ("requires_approval", lambda i: "true" if getattr(i, "requires_approval", False) else "false"),
            ("updated_at", lambda i: (
                getattr(i, "updated_at").isoformat()
                if getattr(i, "updated_at", None) is not None and hasattr(getattr(i, "updated_at"), "isoformat")
                else str(getattr(i, "updated_at", "") or "")
            )),
        ]

    def generate():
        buf = io.StringIO()
        w = csv.writer(buf)

        w.writerow([h for h, _ in columns])
        yield buf.getvalue()
        buf.seek(0)
        buf.truncate(0)

        for i in items:
            w.writerow([getter(i) for _, getter in columns])
            yield buf.getvalue()
            buf.seek(0)
            buf.truncate(0)

    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(generate(), media_type="text/csv; charset=utf-8", headers=headers)

def csv_bytes_to_rows(data: bytes) -> tuple[list[dict[str, str]], str | None]:
    """
    Turn CSV bytes into rows keyed by normalized header.

    Returns (rows, error_message):
      - success: (rows, None)
      - failure: ([], "CSV header not found")
    """
    text = decode_csv_bytes(data)
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return [], "CSV header not found"

    field_map = {fn: normalize_header(fn) for fn in reader.fieldnames}

    rows: list[dict[str, str]] = []
    for raw in reader:
        row: dict[str, str] = {}
        for k, v in raw.items():
            if k is None:
                # extra cells beyond the header
                continue
            nk = field_map.get(k, k)
            row[nk] = v if v is not None else ""
        rows.append(row)

    return rows, None
