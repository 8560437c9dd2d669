"""
    geonames_text.py
    Trigram similarity and the search terms the record store indexes for
    every place name.

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

    Each name variant is indexed under two kinds of term:

      - its trigrams (3 characters, padded per word like pg_trgm), which
        give the exact trigram similarity against a query;
      - the 2-character windows of each of its words, so a short query word
        can still be found inside a longer name.

    A query that is a substring of a name only contains windows that also
    occur in that name, so containment can be narrowed with the same table.
"""

import re

_WORD_SEPARATOR_RE = re.compile(r"[\W_]+")


def words(value: str) -> list[str]:
    """Lower-cased words of a string, split on anything but letters and digits."""
    return [w for w in _WORD_SEPARATOR_RE.split(value.lower()) if w]
# words


def trigrams(value: str) -> set[str]:
    """
    Return the trigram set of a string: each lower-cased word is padded with
    two spaces in front and one behind and cut into 3-character windows.
    """
    grams = set()
    for word in words(value):
        padded = f"  {word} "
        grams.update(padded[i:i + 3] for i in range(len(padded) - 2))
    return grams
# trigrams


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
# jaccard


def similarity(a: str, b: str) -> float:
    """Shared-trigram similarity in [0, 1]; symmetric in its arguments."""
    return jaccard(trigrams(a), trigrams(b))
# similarity


# -----------------------------------------------------------------------------


def index_terms(name: str) -> set[str]:
    """Every term stored for one name variant: its trigrams and word bigrams."""
    terms = trigrams(name)
    for word in words(name):
        terms.update(word[i:i + 2] for i in range(len(word) - 1))
    return terms
# index_terms


def containment_terms(query: str) -> frozenset[str]:
    """
    Terms every name containing the query must hold: the unpadded trigram
    windows of each query word, or the word itself when it is two
    characters long. One-letter words add nothing. An empty result means
    containment cannot be narrowed by the index.
    """
    terms = set()
    for word in words(query):
        if len(word) == 2:
            terms.add(word)
        else:
            terms.update(word[i:i + 3] for i in range(len(word) - 2))
    return frozenset(terms)
# containment_terms
