"""
Import students from a CSV straight into MongoDB.
Run from the project root: python -m backend.import_alumnes_db alumnes.csv
"""
import argparse
import logging

from pymongo import MongoClient, ReturnDocument

from . import config
from .csv_import import import_alumnes, parse_alumnes_csv
from .models import AlumneBase, AlumneRecord

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def next_id(db, sequence: str) -> int:
    counter = db.counters.find_one_and_update(
        {"_id": sequence},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def active_year_id(db):
    active = db.anys_academics.find_one({"estat": "actiu"}, {"_id": 0, "id": 1})
    return active["id"] if active else None


def make_inserter(db):
    def insert(alumne: AlumneBase):
        record = AlumneRecord(**alumne.model_dump(), id=next_id(db, "alumnes"))
        db.alumnes.insert_one(record.model_dump())
    return insert


def main(argv=None):
    parser = argparse.ArgumentParser(description="Import alumnes from a CSV file into MongoDB")
    parser.add_argument("csv_path")
    parser.add_argument("--any-academic-id", type=int, default=None)
    args = parser.parse_args(argv)

    client = MongoClient(config.get_mongo_url(), serverSelectionTimeoutMS=5000)
    try:
        db = client[config.DB_NAME]
        year_id = args.any_academic_id if args.any_academic_id is not None else active_year_id(db)
        if year_id is None:
            logger.warning("No active academic year; students will be stored without one")
        alumnes, skipped = parse_alumnes_csv(args.csv_path, any_academic_id=year_id)
        logger.info("Parsed %s student(s) from %s (%s skipped)", len(alumnes), args.csv_path, skipped)
        result = import_alumnes(alumnes, make_inserter(db), skipped)
    finally:
        client.close()

    print(f"Inserted: {result.inserted}  Skipped: {result.skipped}  Failed: {result.failed}")
    for failure in result.failures:
        print(f"  - {failure}")
    return result


if __name__ == "__main__":
    main()
