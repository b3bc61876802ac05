"""
Backup Agent
Exports stored OPC UA points day by day into a CSV file and an aligned text
table, and zips each month's files into `<year>-<Month>.zip`. Descriptions
come from the discovery manifest written by the ingestion agent.
"""
import calendar
import csv
import logging
import sys
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from common.config import get_settings
from common.errors import StoreError
from common.logging_setup import configure_logging
from common.manifest import name_map
from common.models import split_numeric_node_id
from common.store import TimescaleStore

logger = logging.getLogger(__name__)

COLUMNS = ("time", "nodeId", "value", "description")
WIDTHS = (25, 25, 15, 60)


@dataclass
class DayResult:
    name: str
    csv_path: Path
    txt_path: Path
    rows: int = 0
    success: bool = True
    error: Optional[str] = None


def center_text(text, width: int) -> str:
    s = "" if text is None else str(text)
    if len(s) >= width:
        return s[: width - 3] + "..."
    return s.center(width)


def local_time(value: datetime, tz: ZoneInfo) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    local = value.astimezone(tz)
    return local.strftime("%d/%m/%Y %H:%M:%S") + f".{local.microsecond // 1000:03d}"


def collect_rows(store, measurement: str, day: date, names: Dict[str, str], tz: ZoneInfo) -> List[dict]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    stop = datetime.combine(day, time(23, 59, 59, 999999), tzinfo=timezone.utc)
    rows = []
    for row in store.query(measurement, None, start, stop):
        if split_numeric_node_id(row.node_id) is None:
            continue
        rows.append({
            "time": local_time(row.time, tz),
            "nodeId": row.node_id,
            "value": row.value,
            "description": names.get(row.node_id, "N/A"),
        })
    return rows


def write_csv(path: Path, rows: List[dict]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow([center_text(c, w) for c, w in zip(COLUMNS, WIDTHS)])
        for r in rows:
            writer.writerow([center_text(r[c], w) for c, w in zip(COLUMNS, WIDTHS)])


def write_table(path: Path, rows: List[dict]) -> None:
    header = " | ".join(center_text(c, w) for c, w in zip(COLUMNS, WIDTHS))
    separator = "-+-".join("-" * w for w in WIDTHS)
    lines = [header, separator]
    if rows:
        lines.extend(" | ".join(center_text(r[c], w) for c, w in zip(COLUMNS, WIDTHS)) for r in rows)
    else:
        lines.append("   <no OPC-UA rows found for this day>")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def backup_day(store, measurement: str, day: date, names: Dict[str, str], out_dir: Path, tz: ZoneInfo) -> DayResult:
    csv_name = f"{day.isoformat()}.csv"
    result = DayResult(name=csv_name, csv_path=out_dir / csv_name, txt_path=out_dir / f"{day.isoformat()}.txt")
    try:
        rows = collect_rows(store, measurement, day, names, tz)
    except StoreError as e:
        result.success = False
        result.error = str(e)
        return result
    write_csv(result.csv_path, rows)
    write_table(result.txt_path, rows)
    result.rows = len(rows)
    return result


def backup_month(store, measurement: str, year: int, month: int, names: Dict[str, str],
                 out_dir: Path, tz: ZoneInfo) -> Path:
    month_name = calendar.month_name[month]
    logger.info(f"Starting backup for {month_name} {year}...")
    out_dir.mkdir(parents=True, exist_ok=True)
    zip_path = out_dir / f"{year}-{month_name}.zip"
    days = calendar.monthrange(year, month)[1]

    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for offset in range(days):
            day = date(year, month, 1) + timedelta(days=offset)
            result = backup_day(store, measurement, day, names, out_dir, tz)
            if result.success:
                archive.write(result.csv_path, result.csv_path.name)
                archive.write(result.txt_path, result.txt_path.name)
                logger.info(f"Added CSV & TXT: {result.name} ({result.rows} rows)")
            else:
                logger.error(f"Error for {result.name}: {result.error}")

    logger.info(f"Monthly ZIP backup saved: {zip_path}")
    return zip_path


def main() -> int:
    settings = get_settings()
    configure_logging("backup", settings.log_level, settings.log_dir)
    store = TimescaleStore(settings.dsn, settings.db_table)
    names = name_map(settings.manifest_file)
    tz = ZoneInfo(settings.display_timezone)

    today = date.today()
    year = settings.backup_year or today.year
    end_month = today.month if year == today.year else 12
    try:
        for month in range(settings.backup_start_month, end_month + 1):
            backup_month(store, settings.measurement, year, month, names, settings.backup_dir, tz)
    finally:
        store.close()
    logger.info("All backups completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
