"""
    geonames_errors.py
    Exception hierarchy shared by the loader, the search engine and the
    reverse geocoder.

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
"""


class GeonamesError(Exception):
    """Base class for every error raised by this project."""
# GeonamesError


class ValidationError(GeonamesError, ValueError):
    """A caller supplied a missing or malformed parameter."""
# ValidationError


class IngestionRowError(GeonamesError, ValueError):
    """
    A single dump row could not be used. The loader counts these by
    ``reason`` and moves on to the next row.
    """

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason
# IngestionRowError


class IngestionFatalError(GeonamesError, RuntimeError):
    """Download or extraction failed; the whole load is aborted."""
# IngestionFatalError


class InternalError(GeonamesError, RuntimeError):
    """Unexpected failure while answering a query. Details go to the log."""
# InternalError
