"""Row builders and constants shared by the census tests."""

from datetime import date, datetime

HOSPITAL = "general-hospital"
UPLOAD_DATE = date(2024, 1, 15)
NOW = datetime(2024, 1, 15, 7, 30)


def row(mrn, unit="N07E", name="Doe, Jane", **fields):
    """A census row mapping with the required columns filled in."""
    return {"mrn": mrn, "patient_name": name, "unit_name": unit, **fields}
