import io
import logging
from typing import Dict

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .persistence import get_department_by_name, upsert_employee

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["employee_number", "first_name", "last_name", "email", "department"]


def read_employee_csv(csv_content: str) -> pd.DataFrame:
    """Parse employee CSV text; the header row is skipped and columns are positional."""
    if not csv_content.strip():
        return pd.DataFrame(columns=CSV_COLUMNS)
    df = pd.read_csv(
        io.StringIO(csv_content),
        header=0,
        names=CSV_COLUMNS,
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
    )
    return df.fillna("").apply(lambda column: column.str.strip())


def import_employees(db: Session, csv_content: str) -> Dict:
    """Insert or update employees from CSV, keyed on employee number."""
    logger.info("Starting employee import")
    df = read_employee_csv(csv_content)

    imported = 0
    skipped = 0
    errors = []
    departments: Dict[str, int] = {}

    for record in df.to_dict(orient="records"):
        if not record["employee_number"] or not record["first_name"] or not record["last_name"]:
            skipped += 1
            continue

        department_id = None
        department_name = record["department"]
        if department_name:
            if department_name not in departments:
                department = get_department_by_name(db, department_name)
                departments[department_name] = department.id if department else None
            department_id = departments[department_name]
            if department_id is None:
                logger.warning("Unknown department: %s for employee %s",
                               department_name, record["employee_number"])

        try:
            upsert_employee(
                db,
                employee_number=record["employee_number"],
                first_name=record["first_name"],
                last_name=record["last_name"],
                email=record["email"] or None,
                department_id=department_id,
            )
            imported += 1
        except SQLAlchemyError as exc:
            db.rollback()
            errors.append({"employee": record["employee_number"], "error": str(exc)})
            logger.error("Failed to import %s: %s", record["employee_number"], exc)

    summary = {
        "total_rows": len(df),
        "imported": imported,
        "skipped": skipped,
        "errors": len(errors),
        "error_details": errors,
    }
    logger.info("Employee import finished: %s imported, %s skipped, %s errors",
                imported, skipped, len(errors))
    return summary
