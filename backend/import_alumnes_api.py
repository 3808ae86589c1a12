"""
Import students from a CSV through the running API, one POST per row.
Credentials come from IMPORT_EMAIL / IMPORT_PASSWORD.
Run from the project root: python -m backend.import_alumnes_api alumnes.csv
"""
import argparse
import logging
import os

from dashboard import create_dashboard

from .csv_import import import_alumnes, parse_alumnes_csv
from .models import AlumneBase

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def make_inserter(api):
    def insert(alumne: AlumneBase):
        api.request("POST", "/api/alumnes", json=alumne.model_dump(exclude_none=True))
    return insert


def main(argv=None, dashboard=None):
    parser = argparse.ArgumentParser(description="Import alumnes from a CSV file through the API")
    parser.add_argument("csv_path")
    parser.add_argument("--api-url", default=None)
    parser.add_argument("--any-academic-id", type=int, default=None)
    args = parser.parse_args(argv)

    email = os.environ.get("IMPORT_EMAIL")
    password = os.environ.get("IMPORT_PASSWORD")
    if not email or not password:
        raise SystemExit("ERROR: IMPORT_EMAIL and IMPORT_PASSWORD must be set")

    dashboard = dashboard or create_dashboard(base_url=args.api_url)
    if not dashboard.auth.login(email, password):
        raise SystemExit(f"ERROR: login failed: {dashboard.auth.last_error}")

    alumnes, skipped = parse_alumnes_csv(args.csv_path, any_academic_id=args.any_academic_id)
    logger.info("Parsed %s student(s) from %s (%s skipped)", len(alumnes), args.csv_path, skipped)
    result = import_alumnes(alumnes, make_inserter(dashboard.api), skipped)

    print(f"Inserted: {result.inserted}  Skipped: {result.skipped}  Failed: {result.failed}")
    for failure in result.failures:
        print(f"  - {failure}")
    return result


if __name__ == "__main__":
    main()
