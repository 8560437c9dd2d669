#!/usr/bin/env python3

"""
    download_geonames.py
    Downloads the Geonames dumps used by the search engine from geonames.org.

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

    Configuration is read from config/config.yaml.

    Usage:
        python download_geonames.py [--config CONFIG_FILE]

    Every failure here (unreachable host, non-200 status, corrupt archive)
    raises IngestionFatalError: a partial dump must never be loaded.
"""

import argparse
import logging
import os
import shutil
import sys
import tempfile
import zipfile
import zlib
from pathlib import Path

import requests
import yaml
from tqdm import tqdm

from geonames_errors import IngestionFatalError
from geonames_logging import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_URL_DATA = "http://download.geonames.org/export/dump"

# -----------------------------------------------------------------------------


def load_config(config_path: str) -> dict:
    with open(config_path, "r") as f:
        return yaml.safe_load(f)
# load_config

# -----------------------------------------------------------------------------


def download_file(url: str, dest_path: Path) -> bool:
    """Download a file with progress bar. Returns True if file was (re)downloaded."""
    try:
        response = requests.head(url, allow_redirects=True, timeout=30)
    except requests.RequestException as exc:
        raise IngestionFatalError(f"Cannot reach {url}: {exc}") from exc
    if response.status_code != 200:
        raise IngestionFatalError(
            f"Cannot reach {url} (HTTP {response.status_code})"
        )

    remote_size = int(response.headers.get("Content-Length", 0))

    # Check if local file is already up to date
    if dest_path.exists() and remote_size and dest_path.stat().st_size == remote_size:
        logger.info("%s: already up to date, skipping.", dest_path.name)
        return False

    logger.info("Downloading %s ...", dest_path.name)
    try:
        response = requests.get(url, stream=True, timeout=60)
        response.raise_for_status()

        total = int(response.headers.get("Content-Length", 0))
        with open(dest_path, "wb") as f, tqdm(
            total=total,
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            desc=f"    {dest_path.name}",
            leave=False,
        ) as bar:
            for chunk in response.iter_content(chunk_size=8192):
                f.write(chunk)
                bar.update(len(chunk))
    except requests.RequestException as exc:
        dest_path.unlink(missing_ok=True)
        raise IngestionFatalError(f"Download of {url} failed: {exc}") from exc

    return True
# download_file


# -----------------------------------------------------------------------------


def unzip_file(zip_path: Path, dest_dir: Path) -> None:
    """
    Extract every member of zip_path into dest_dir. Members are unpacked in
    a staging directory first and only moved into dest_dir once the whole
    archive has been read, so a failed extraction leaves nothing behind.
    """
    logger.info("Extracting %s ...", zip_path.name)
    staging = Path(tempfile.mkdtemp(prefix=f".{zip_path.stem}-", dir=dest_dir))
    try:
        with zipfile.ZipFile(zip_path, "r") as zf:
            zf.extractall(staging)
            members = [m for m in zf.namelist() if not m.endswith("/")]
        for member in members:
            target = dest_dir / member
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staging / member, target)
    except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as exc:
        raise IngestionFatalError(f"Cannot extract {zip_path}: {exc}") from exc
    finally:
        shutil.rmtree(staging, ignore_errors=True)
# unzip_file


# -----------------------------------------------------------------------------


def fetch_archive(base_url: str, name: str, data_dir: Path) -> Path:
    """
    Make sure <data_dir>/<name>.txt exists, downloading and extracting
    <base_url>/<name>.zip only when the text file is not cached yet.
    """
    data_dir.mkdir(parents=True, exist_ok=True)
    txt_path = data_dir / f"{name}.txt"
    if txt_path.exists():
        logger.info("%s: cached, skipping download.", txt_path.name)
        return txt_path

    zip_path = data_dir / f"{name}.zip"
    download_file(f"{base_url.rstrip('/')}/{name}.zip", zip_path)
    unzip_file(zip_path, data_dir)

    if not txt_path.exists():
        raise IngestionFatalError(f"{zip_path.name} did not contain {txt_path.name}")
    return txt_path
# fetch_archive


# -----------------------------------------------------------------------------


def fetch_file(base_url: str, filename: str, data_dir: Path) -> Path:
    """Make sure a plain (uncompressed) dump file is cached in data_dir."""
    data_dir.mkdir(parents=True, exist_ok=True)
    dest = data_dir / filename
    if dest.exists():
        logger.info("%s: cached, skipping download.", dest.name)
        return dest
    download_file(f"{base_url.rstrip('/')}/{filename}", dest)
    return dest
# fetch_file


# -----------------------------------------------------------------------------


def fetch_all(cfg: dict) -> dict:
    """
    Fetch every dump named in the 'download' config section, one at a time.
    Returns a dict of local paths keyed by 'places', 'alternate_names' and
    (when configured) 'admin1_codes'.
    """
    dl = cfg.get("download", {})
    data_dir = Path(dl.get("data_dir", "data"))
    base_url = dl.get("url_data", DEFAULT_URL_DATA)

    paths = {
        "places": fetch_archive(
            base_url, dl.get("places_dataset", "cities15000"), data_dir
        ),
        "alternate_names": fetch_archive(
            base_url, dl.get("alternate_names", "alternateNamesV2"), data_dir
        ),
    }
    if dl.get("admin1_codes"):
        paths["admin1_codes"] = fetch_file(base_url, dl["admin1_codes"], data_dir)
    return paths
# fetch_all


# -----------------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(description="Download Geonames data files.")
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to config YAML file (default: config/config.yaml)",
    )
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config.get("log_level", "INFO"))
    dl = config.get("download", {})

    print("=" * 60)
    print("Geonames data downloader")
    print(f"  Data directory : {Path(dl.get('data_dir', 'data')).resolve()}")
    print(f"  Source URL     : {dl.get('url_data', DEFAULT_URL_DATA)}")
    print("=" * 60)

    try:
        paths = fetch_all(config)
    except IngestionFatalError as e:
        print(f"\nERROR: {e}")
        sys.exit(1)

    print("\nDownload complete.")
    for label, path in paths.items():
        print(f"  {label:<16}: {path.resolve()}")
# main

# -----------------------------------------------------------------------------


if __name__ == "__main__":
    main()
# __main__
