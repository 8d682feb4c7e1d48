import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
os.chdir(BACKEND)
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from coinledger.models import Base, SessionLocal, engine, ensure_runtime_migrations  # noqa: E402
from coinledger.periods import ingest_dataset  # noqa: E402
from coinledger.schemas import DatasetIn  # noqa: E402


def load_payload(path: Path, period: str | None, section: str | None) -> DatasetIn:
    with path.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    # A bare list of students needs the period on the command line.
    if isinstance(raw, list):
        raw = {"students": raw}
    if period:
        raw["period"] = period
    if section:
        raw["section_number"] = section
    if not raw.get("period"):
        raise SystemExit("No period given in the file or on the command line")
    return DatasetIn.model_validate(raw)


def main() -> None:
    if len(sys.argv) < 2:
        raise SystemExit("usage: import_daily_records.py <records.json> [period] [section_number]")
    input_json = Path(sys.argv[1])
    if not input_json.is_absolute():
        input_json = ROOT / input_json
    if not input_json.exists():
        raise SystemExit(f"Missing input JSON: {input_json}")
    period = sys.argv[2] if len(sys.argv) > 2 else None
    section = sys.argv[3] if len(sys.argv) > 3 else None

    payload = load_payload(input_json, period, section)
    Base.metadata.create_all(engine)
    ensure_runtime_migrations()
    with SessionLocal() as db:
        summary = ingest_dataset(payload, db, actor="import_daily_records")

    print(f"Period: {summary['period']} / section {summary['section_number']}")
    print(f"Students: {summary['students']} ({summary['created']} new, {summary['replaced']} replaced, {summary['removed']} removed)")
    print(f"Daily records stored: {summary['records']}")


if __name__ == "__main__":
    main()
