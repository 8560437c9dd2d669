#!/usr/bin/env python3

"""
    load_geonames.py
    Creates the search schema in an existing database and loads countries,
    places and alternate names from the Geonames dumps.

    Copyright (C) 2026 Rodolfo González González <code@rodolfo.gg>

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License, or
    (at your option) any later version.

    This program is distributed in the hope that it will be useful,
    but WITHOUT ANY WARRANTY; without even the implied warranty of
    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
    GNU General Public License for more details.

    You should have received a copy of the GNU General Public License
    along with this program.  If not, see <https://www.gnu.org/licenses/>.

    ---------------------------------------------------------------------------

    Configuration is read from config/config.yaml (or --config argument).
    The database must already exist; this script only creates tables and
    populates them.

    Usage:
        python load_geonames.py [--config CONFIG_FILE] [--skip-analyze]

    The load is one-shot: countries are re-seeded on every run, but places
    and alternate names are only imported while their table is empty.

    Alternate names are streamed through a BatchPump: the reader fills
    batches of 'batch_size' rows and blocks while 'max_in_flight' batches
    are still waiting to be written, so memory stays flat no matter how
    large alternateNamesV2.txt is.
"""

import argparse
import csv
import json
import logging
import queue
import sys
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

import yaml

from download_geonames import DEFAULT_URL_DATA, fetch_archive, fetch_file
from geonames_errors import IngestionFatalError, IngestionRowError, ValidationError
from geonames_logging import setup_logging
from geonames_store import AlternateName, Country, Place, RecordStore, normalize_country_code

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_IN_FLIGHT = 1
DEFAULT_PROGRESS_EVERY = 50_000
DEFAULT_COUNTRIES_FILE = "config/countries.tsv"

MAX_LANGUAGE_LENGTH = 7
MAX_ALTERNATE_NAME_LENGTH = 400
ALL_LANGUAGES = "all"

PLACE_COLUMNS = [
    "geonameid", "name", "asciiname", "alternatenames", "latitude",
    "longitude", "fclass", "fcode", "country", "cc2", "admin1",
    "admin2", "admin3", "admin4", "population", "elevation",
    "gtopo30", "timezone", "moddate",
]

ALTERNATE_NAME_COLUMNS = [
    "alternatenameid", "geonameid", "isolanguage", "alternatename",
    "ispreferredname", "isshortname", "iscolloquial", "ishistoric",
    "from", "to",
]


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------

def load_config(config_path: str) -> dict:
    with open(config_path, "r") as f:
        return yaml.safe_load(f)
# load_config


# -----------------------------------------------------------------------------


def normalize_languages(value) -> frozenset[str] | None:
    """
    Turn the 'ingest.languages' setting (a list or a comma-separated string)
    into a lower-cased allow-list. None means every language is accepted.
    """
    if not value:
        return None
    if isinstance(value, str):
        value = value.split(",")
    languages = frozenset(str(v).strip().lower() for v in value if str(v).strip())
    if not languages or ALL_LANGUAGES in languages:
        return None
    return languages
# normalize_languages


# ---------------------------------------------------------------------------
# TSV parsing
# ---------------------------------------------------------------------------

def _iter_tsv_rows(filepath: Path) -> Iterator[list[str]]:
    """Stream a tab-delimited file as lists of fields, skipping comment/blank lines."""
    with open(filepath, "r", encoding="utf-8", errors="replace") as f:
        reader = csv.reader(f, delimiter="\t", quotechar="\x01")
        for line in reader:
            if not line:
                continue
            if line[0].startswith("#"):
                continue
            yield line
# _iter_tsv_rows


# -----------------------------------------------------------------------------


def _to_int(value: str, column: str, required: bool = False) -> int | None:
    value = value.strip()
    if not value:
        if required:
            raise IngestionRowError("missing_value", f"{column} is empty")
        return None
    try:
        return int(value)
    except ValueError:
        raise IngestionRowError("bad_number", f"{column}={value!r}") from None
# _to_int


def _to_float(value: str, column: str) -> float:
    value = value.strip()
    if not value:
        raise IngestionRowError("missing_value", f"{column} is empty")
    try:
        return float(value)
    except ValueError:
        raise IngestionRowError("bad_number", f"{column}={value!r}") from None
# _to_float


def _to_date(value: str) -> date | None:
    value = value.strip()
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise IngestionRowError("bad_date", f"moddate={value!r}") from None
# _to_date


# -----------------------------------------------------------------------------


def parse_place_row(fields: list[str],
                    admin1_names: dict[str, str] | None = None) -> Place:
    """
    Convert one row of a places dump (allCountries.txt, citiesNNNN.txt)
    into a Place. Raises IngestionRowError when the row is unusable.
    """
    if len(fields) < 6:
        raise IngestionRowError("short_row", f"{len(fields)} fields")
    if len(fields) < len(PLACE_COLUMNS):
        fields = fields + [""] * (len(PLACE_COLUMNS) - len(fields))

    geonameid = _to_int(fields[0], "geonameid", required=True)
    name = fields[1].strip()
    if not name:
        raise IngestionRowError("missing_value", "name is empty")

    latitude = _to_float(fields[4], "latitude")
    longitude = _to_float(fields[5], "longitude")
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        raise IngestionRowError("bad_coordinates", f"{latitude}, {longitude}")

    try:
        country = normalize_country_code(fields[8]) if fields[8].strip() else None
    except ValidationError:
        country = None
    admin1 = fields[10].strip() or None
    admin_region = None
    if admin1_names and country and admin1:
        admin_region = admin1_names.get(f"{country}.{admin1}")

    return Place(
        geonameid=geonameid,
        name=name,
        latitude=latitude,
        longitude=longitude,
        ascii_name=fields[2].strip() or None,
        country_code=country,
        admin1_code=admin1,
        admin_region=admin_region,
        feature_class=fields[6].strip() or None,
        feature_code=fields[7].strip() or None,
        population=_to_int(fields[14], "population"),
        elevation=_to_int(fields[15], "elevation"),
        timezone=fields[17].strip() or None,
        modification_date=_to_date(fields[18]),
    )
# parse_place_row


# -----------------------------------------------------------------------------


def parse_alternate_name_row(fields: list[str],
                             languages: frozenset[str] | None = None) -> AlternateName:
    """
    Convert one row of alternateNamesV2.txt into an AlternateName.

    Rows with fewer than 8 fields, without a language, with a language code
    longer than 7 characters, with a name longer than 400 characters, or
    whose language is not in the allow-list are rejected here, before any
    database access.
    """
    if len(fields) < 8:
        raise IngestionRowError("short_row", f"{len(fields)} fields")

    language = fields[2].strip()
    name = fields[3]
    if not language or len(language) > MAX_LANGUAGE_LENGTH:
        raise IngestionRowError("bad_language", f"isolanguage={language!r}")
    if not name or len(name) > MAX_ALTERNATE_NAME_LENGTH:
        raise IngestionRowError("bad_name", f"{len(name)} characters")
    if languages is not None and language.lower() not in languages:
        raise IngestionRowError("language_filtered", language)

    return AlternateName(
        alternatenameid=_to_int(fields[0], "alternatenameid", required=True),
        place_id=_to_int(fields[1], "geonameid", required=True),
        language=language,
        name=name,
        is_preferred=fields[4].strip() == "1",
        is_short=fields[5].strip() == "1",
        is_colloquial=fields[6].strip() == "1",
        is_historic=fields[7].strip() == "1",
    )
# parse_alternate_name_row


# -----------------------------------------------------------------------------


def load_admin1_names(filepath: Path) -> dict[str, str]:
    """Read admin1CodesASCII.txt into a {"CC.code": name} map."""
    names = {}
    for fields in _iter_tsv_rows(filepath):
        if len(fields) < 2 or not fields[0].strip():
            continue
        name = fields[1].strip() or (fields[2].strip() if len(fields) > 2 else "")
        if name:
            names[fields[0].strip()] = name
    logger.info("Loaded %d admin1 names from %s", len(names), filepath.name)
    return names
# load_admin1_names


# ---------------------------------------------------------------------------
# Country seed
# ---------------------------------------------------------------------------

def load_country_seed(filepath: Path) -> list[Country]:
    """
    Parse the bundled country list. Columns: code, name, latitude,
    longitude, comma-separated languages, JSON translations.
    """
    countries = []
    for lineno, fields in enumerate(_iter_tsv_rows(filepath), start=1):
        if len(fields) < 6:
            fields = fields + [""] * (6 - len(fields))
        code, name, lat, lon, languages, translations = fields[:6]
        if not name.strip():
            raise ValidationError(f"{filepath.name}: row {lineno} has no name")
        try:
            countries.append(Country(
                code=normalize_country_code(code),
                name=name.strip(),
                latitude=float(lat) if lat.strip() else None,
                longitude=float(lon) if lon.strip() else None,
                spoken_languages=[
                    lang.strip() for lang in languages.split(",") if lang.strip()
                ],
                translations=json.loads(translations) if translations.strip() else {},
            ))
        except ValueError as exc:
            raise ValidationError(f"{filepath.name}: row {lineno}: {exc}") from exc
    return countries
# load_country_seed


# -----------------------------------------------------------------------------


def seed_countries(store: RecordStore, filepath: Path) -> int:
    """Upsert every seed country. Safe to run on every start."""
    countries = load_country_seed(filepath)
    count = store.upsert_countries(countries)
    logger.info("Seeded %d countries", count)
    return count
# seed_countries


# ---------------------------------------------------------------------------
# Bounded producer/consumer pump
# ---------------------------------------------------------------------------

class BatchPump:
    """
    Feed items from the calling thread (the producer) to a single worker
    thread (the consumer) in fixed-size batches over a bounded queue.

    A batch holds one of ``max_in_flight`` slots from the moment its first
    item is read until ``apply_batch`` has returned for it. The producer
    blocks on the slot before it reads further, so at most
    ``batch_size * max_in_flight`` items are ever read but not yet applied.
    With the default of one slot, reading is suspended for as long as the
    current batch is being written.

    ``apply_batch`` returns the number of rows it stored. An exception
    raised by it stops the pump and is re-raised from run().
    """

    _STOP = object()

    def __init__(self, apply_batch: Callable[[list], int],
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 max_in_flight: int = DEFAULT_MAX_IN_FLIGHT):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.apply_batch = apply_batch
        self.batch_size = batch_size
        self.max_in_flight = max_in_flight
        self.applied = 0
        self.batches = 0
        self.max_pending = 0
        self._pending = 0
        self._error: BaseException | None = None
        self._lock = threading.Lock()
        self._slots = threading.Semaphore(max_in_flight)
        self._queue: queue.Queue = queue.Queue(maxsize=max_in_flight)

    @property
    def ceiling(self) -> int:
        return self.batch_size * self.max_in_flight

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def _consume(self) -> None:
        while True:
            batch = self._queue.get()
            try:
                if batch is self._STOP:
                    return
                if self._error is None:
                    try:
                        self.applied += self.apply_batch(batch)
                        self.batches += 1
                    except Exception as exc:
                        self._error = exc
                with self._lock:
                    self._pending -= len(batch)
                self._slots.release()
            finally:
                self._queue.task_done()

    def run(self, items: Iterable) -> int:
        """Push every item through apply_batch. Returns the rows stored."""
        worker = threading.Thread(target=self._consume, name="batch-pump", daemon=True)
        worker.start()
        source = iter(items)
        batch: list = []
        try:
            while self._error is None:
                if not batch:
                    # Blocks while max_in_flight batches are still unapplied,
                    # before the next item is pulled from the source.
                    self._slots.acquire()
                    if self._error is not None:
                        break
                try:
                    item = next(source)
                except StopIteration:
                    if batch:
                        self._queue.put(batch)
                    else:
                        self._slots.release()
                    break
                batch.append(item)
                with self._lock:
                    self._pending += 1
                    self.max_pending = max(self.max_pending, self._pending)
                if len(batch) >= self.batch_size:
                    self._queue.put(batch)
                    batch = []
        finally:
            self._queue.put(self._STOP)
            worker.join()

        if self._error is not None:
            raise self._error
        return self.applied
# BatchPump


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

@dataclass
class LoadStats:
    label: str
    already_loaded: bool = False
    lines_read: int = 0
    inserted: int = 0
    max_pending: int = 0
    skipped: Counter = field(default_factory=Counter)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())
# LoadStats


def _with_progress(rows: Iterable[list[str]], stats: LoadStats,
                   pump: BatchPump, every: int) -> Iterator[list[str]]:
    for fields in rows:
        stats.lines_read += 1
        if every and stats.lines_read % every == 0:
            logger.info("Processed %d %s lines, imported %d ...",
                        stats.lines_read, stats.label, pump.applied)
        yield fields
# _with_progress


# -----------------------------------------------------------------------------


def load_places(store: RecordStore, filepath: Path,
                admin1_names: dict[str, str] | None = None,
                batch_size: int = DEFAULT_BATCH_SIZE,
                max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
                progress_every: int = DEFAULT_PROGRESS_EVERY) -> LoadStats:
    """Import a places dump unless the place table already has rows."""
    stats = LoadStats("places")
    if store.has_places():
        logger.info("Places already exist, skipping import")
        stats.already_loaded = True
        return stats

    logger.info("Importing places from %s ...", filepath.name)
    pump = BatchPump(store.insert_places_if_absent, batch_size, max_in_flight)

    def records() -> Iterator[Place]:
        for fields in _with_progress(_iter_tsv_rows(filepath), stats, pump,
                                     progress_every):
            try:
                yield parse_place_row(fields, admin1_names)
            except IngestionRowError as exc:
                stats.skipped[exc.reason] += 1
                logger.debug("Skipping place row %d: %s", stats.lines_read, exc)

    stats.inserted = pump.run(records())
    stats.max_pending = pump.max_pending
    logger.info("Imported %d places (%d rows skipped)",
                stats.inserted, stats.skipped_total)
    return stats
# load_places


# -----------------------------------------------------------------------------


def load_alternate_names(store: RecordStore, filepath: Path,
                         languages=None,
                         batch_size: int = DEFAULT_BATCH_SIZE,
                         max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
                         progress_every: int = DEFAULT_PROGRESS_EVERY) -> LoadStats:
    """
    Import alternateNamesV2.txt unless the alternatename table already has
    rows. Rows pointing at a place that is not stored are dropped.
    """
    stats = LoadStats("alternate names")
    if store.has_alternate_names():
        logger.info("Alternate names already exist, skipping import")
        stats.already_loaded = True
        return stats

    allowed = normalize_languages(languages)
    if allowed:
        logger.info("Filtering for languages: %s", ", ".join(sorted(allowed)))
    else:
        logger.info("Loading all languages")

    # Keep the id set resident before the worker thread starts reading it
    store.load_place_ids()
    orphans = 0

    def apply(batch: list[AlternateName]) -> int:
        nonlocal orphans
        accepted = []
        for alt in batch:
            if store.place_exists(alt.place_id):
                accepted.append(alt)
            else:
                orphans += 1
        return store.insert_alternate_names_if_absent(accepted)

    pump = BatchPump(apply, batch_size, max_in_flight)

    def records() -> Iterator[AlternateName]:
        for fields in _with_progress(_iter_tsv_rows(filepath), stats, pump,
                                     progress_every):
            try:
                yield parse_alternate_name_row(fields, allowed)
            except IngestionRowError as exc:
                stats.skipped[exc.reason] += 1

    logger.info("Importing alternate names from %s ...", filepath.name)
    stats.inserted = pump.run(records())
    stats.max_pending = pump.max_pending
    if orphans:
        stats.skipped["orphan"] += orphans
    logger.info("Imported %d alternate names (%d rows skipped)",
                stats.inserted, stats.skipped_total)
    return stats
# load_alternate_names


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@dataclass
class IngestionReport:
    countries: int = 0
    places: LoadStats = field(default_factory=lambda: LoadStats("places"))
    alternate_names: LoadStats = field(
        default_factory=lambda: LoadStats("alternate names")
    )
    name_terms: int = 0
    totals: dict[str, int] = field(default_factory=dict)
# IngestionReport


def run_ingestion(store: RecordStore, cfg: dict, analyze: bool = True) -> IngestionReport:
    """
    Seed countries, then load places and alternate names (each only while
    its table is empty, and only fetching its dump when it will be used),
    then refresh statistics once. A database loaded without the name index
    gets it rebuilt here.
    """
    dl = cfg.get("download") or {}
    ing = cfg.get("ingest") or {}
    seed = cfg.get("seed") or {}

    data_dir = Path(dl.get("data_dir", "data"))
    base_url = dl.get("url_data", DEFAULT_URL_DATA)
    pump_options = {
        "batch_size": int(ing.get("batch_size", DEFAULT_BATCH_SIZE)),
        "max_in_flight": int(ing.get("max_in_flight", DEFAULT_MAX_IN_FLIGHT)),
        "progress_every": int(ing.get("progress_every", DEFAULT_PROGRESS_EVERY)),
    }

    report = IngestionReport()
    store.create_schema()
    report.countries = seed_countries(
        store, Path(seed.get("countries_file", DEFAULT_COUNTRIES_FILE))
    )

    if store.has_places():
        logger.info("Places already exist, skipping download and import")
        report.places.already_loaded = True
    else:
        places_path = fetch_archive(
            base_url, dl.get("places_dataset", "cities15000"), data_dir
        )
        admin1_names = None
        if dl.get("admin1_codes"):
            admin1_names = load_admin1_names(
                fetch_file(base_url, dl["admin1_codes"], data_dir)
            )
        report.places = load_places(store, places_path, admin1_names, **pump_options)

    if store.has_alternate_names():
        logger.info("Alternate names already exist, skipping download and import")
        report.alternate_names.already_loaded = True
    else:
        alt_path = fetch_archive(
            base_url, dl.get("alternate_names", "alternateNamesV2"), data_dir
        )
        report.alternate_names = load_alternate_names(
            store, alt_path, ing.get("languages"), **pump_options
        )

    if store.has_places() and not store.has_name_terms():
        logger.info("Name index is empty, rebuilding it from the loaded names")
        report.name_terms = store.rebuild_name_terms()

    if analyze:
        store.analyze()

    report.totals = {
        "countries": store.count_countries(),
        "places": store.count_places(),
        "alternate_names": store.count_alternate_names(),
        "name_terms": store.count_name_terms(),
    }
    return report
# run_ingestion


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Load Geonames data into a relational database via SQLAlchemy."
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to config YAML file (default: config/config.yaml)",
    )
    parser.add_argument(
        "--skip-analyze",
        action="store_true",
        help="Skip the statistics refresh after loading (useful for faster testing)",
    )
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config.get("log_level", "INFO"))

    store = RecordStore.from_config(config)
    db_url = store.engine.url
    dl = config.get("download") or {}
    if db_url.get_backend_name() == "sqlite" and db_url.database:
        Path(db_url.database).parent.mkdir(parents=True, exist_ok=True)

    print("=" * 60)
    print("Geonames database loader")
    print(f"  Engine  : {db_url.get_dialect().name}")
    print(f"  Database: {db_url.database}")
    print(f"  Dataset : {dl.get('places_dataset', 'cities15000')}")
    print(f"  Data dir: {Path(dl.get('data_dir', 'data')).resolve()}")
    print("=" * 60)

    try:
        report = run_ingestion(store, config, analyze=not args.skip_analyze)
    except IngestionFatalError as e:
        print(f"\nImport failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error during import")
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        store.close()

    print("\nImport completed successfully!")
    print("Statistics:")
    for name, count in report.totals.items():
        print(f"  {name:<16}: {count:,}")
    for stats in (report.places, report.alternate_names):
        if stats.skipped:
            reasons = ", ".join(f"{k}={v:,}" for k, v in sorted(stats.skipped.items()))
            print(f"  skipped {stats.label}: {reasons}")
# main

# -----------------------------------------------------------------------------


if __name__ == "__main__":
    main()
# __main__
