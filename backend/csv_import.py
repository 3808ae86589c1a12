"""
Student (alumnes) CSV import shared by the upload endpoint and the scripts.

Expected layout: one header line, then positional columns
nom, cognoms, email, telefon, grup. The grup column holds a small CSV-local
number that is translated through GRUP_ID_MAPPING; rows that do not map are
skipped. Inserts run one row at a time and nothing is deduplicated, so
importing the same file twice stores every student twice.
"""
import io
import logging
import warnings
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import pandas as pd

from .models import AlumneBase, ImportResult

logger = logging.getLogger(__name__)

GRUP_ID_MAPPING: Dict[int, int] = {
    1: 37,  # 1r ESO A
    2: 38,  # 1r ESO B
    3: 39,  # 1r ESO C
    4: 40,  # 2n ESO A
}
CSV_COLUMNS = ["nom", "cognoms", "email", "telefon", "grup"]

CsvSource = Union[str, Path, bytes, io.IOBase]


def _first_columns(fields: List[str]) -> List[str]:
    return fields[: len(CSV_COLUMNS)]


def _read_frame(source: CsvSource) -> pd.DataFrame:
    """Read the file with a fixed width: short rows are padded, extra trailing fields dropped."""
    if isinstance(source, bytes):
        source = io.BytesIO(source)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", pd.errors.ParserWarning)
            frame = pd.read_csv(
                source,
                header=None,
                names=CSV_COLUMNS,
                index_col=False,
                skiprows=1,
                dtype=str,
                keep_default_na=False,
                skipinitialspace=True,
                skip_blank_lines=True,
                engine="python",
                on_bad_lines=_first_columns,
            )
    except pd.errors.EmptyDataError:
        return pd.DataFrame(columns=CSV_COLUMNS)
    return frame.fillna("")


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value.strip())
    except (AttributeError, ValueError):
        return None


def parse_alumnes_csv(
    source: CsvSource,
    group_mapping: Optional[Dict[int, int]] = None,
    any_academic_id: Optional[int] = None,
) -> Tuple[List[AlumneBase], int]:
    """Parse a student CSV into records plus the number of skipped rows."""
    mapping = GRUP_ID_MAPPING if group_mapping is None else group_mapping
    frame = _read_frame(source)

    alumnes = []
    skipped = 0
    for values in frame.itertuples(index=False):
        nom, cognoms, email, telefon, grup = (str(v).strip() for v in values[: len(CSV_COLUMNS)])
        grup_id = mapping.get(_to_int(grup))
        if grup_id is None or not nom:
            logger.debug("Skipping row %s %s: grup %r not mapped", nom, cognoms, grup)
            skipped += 1
            continue
        alumnes.append(
            AlumneBase(
                nom=nom,
                cognoms=cognoms,
                email=email or None,
                telefon=telefon or None,
                grup_id=grup_id,
                any_academic_id=any_academic_id,
            )
        )
    return alumnes, skipped


def _describe(alumne: AlumneBase) -> str:
    return f"{alumne.nom} {alumne.cognoms}".strip()


def import_alumnes(
    alumnes: List[AlumneBase],
    insert: Callable[[AlumneBase], Any],
    skipped: int = 0,
) -> ImportResult:
    result = ImportResult(skipped=skipped)
    for alumne in alumnes:
        try:
            insert(alumne)
            result.inserted += 1
        except Exception as exc:
            logger.error("Error inserting alumne %s: %s", _describe(alumne), exc)
            result.failed += 1
            result.failures.append(f"{_describe(alumne)}: {exc}")
    return result


async def import_alumnes_async(
    alumnes: List[AlumneBase],
    insert: Callable[[AlumneBase], Awaitable[Any]],
    skipped: int = 0,
) -> ImportResult:
    result = ImportResult(skipped=skipped)
    for alumne in alumnes:
        try:
            await insert(alumne)
            result.inserted += 1
        except Exception as exc:
            logger.error("Error inserting alumne %s: %s", _describe(alumne), exc)
            result.failed += 1
            result.failures.append(f"{_describe(alumne)}: {exc}")
    return result
