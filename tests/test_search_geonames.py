"""
Tests for src/search_geonames.py

The scoring ladder is tested as plain functions;
search() runs against a small SQLite file store under tmp_path.
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine

import geonames_store as gs
import load_geonames as lg
import search_geonames as sg
from geonames_errors import InternalError, ValidationError
from geonames_store import AlternateName, Country, Place, RecordStore
from geonames_text import similarity
from search_geonames import Candidate


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------

def _new_store(tmp_path, name="geonames.db"):
    s = RecordStore(create_engine(f"sqlite:///{tmp_path / name}"))
    s.create_schema()
    return s


@pytest.fixture
def store(tmp_path):
    s = _new_store(tmp_path)
    s.upsert_countries([
        Country("GB", "United Kingdom", 54.7023, -3.2765, ["en", "cy"],
                {"en": "United Kingdom", "fr": "Royaume-Uni", "es": "Reino Unido"}),
        Country("FR", "France", 46.2276, 2.2137, ["fr"],
                {"en": "France", "de": "Frankreich"}),
        Country("CA", "Canada", 56.1304, -106.3468, ["en", "fr"], {"en": "Canada"}),
    ])
    s.insert_places_if_absent([
        Place(2643743, "London", 51.50853, -0.12574, ascii_name="London",
              country_code="GB", admin1_code="ENG", admin_region="England"),
        Place(2643736, "Londonderry", 54.9981, -7.30934, ascii_name="Londonderry",
              country_code="GB", admin1_code="NIR", admin_region="Northern Ireland"),
        Place(2988507, "Paris", 48.85341, 2.3488, ascii_name="Paris",
              country_code="FR", admin1_code="11", admin_region="Île-de-France"),
        Place(3448439, "São Paulo", -23.5475, -46.63611, ascii_name="Sao Paulo",
              country_code="BR", admin1_code="27"),
        Place(6058560, "London", 42.98339, -81.23304, ascii_name="London",
              country_code="CA", admin1_code="08", admin_region="Ontario"),
    ])
    s.insert_alternate_names_if_absent([
        AlternateName(1, 2643743, "fr", "Londres", is_preferred=True),
        AlternateName(2, 2643743, "de", "London"),
        AlternateName(3, 2988507, "fr", "Paris"),
        AlternateName(4, 2988507, "la", "Lutetia"),
        AlternateName(5, 2988507, "la", "Lutetia Parisiorum"),
    ])
    yield s
    s.close()


def _by_id(response):
    return {r.geonameid: r for r in response.results if r.type == "city"}


# ---------------------------------------------------------------------------
# Scoring ladder
# ---------------------------------------------------------------------------

class TestScoreCandidate:
    zurich = Candidate("city", "Zürich", "Zurich", ["Zurigo", "Zuerich"])

    @pytest.mark.parametrize("query, expected", [
        ("zürich", 100),
        ("ZURICH", 95),
        ("zurigo", 90),
        ("zür", 80),
        ("uric", 75),
        ("urig", 70),
    ])
    def test_tiers(self, query, expected):
        assert sg.score_candidate(self.zurich, query) == expected

    def test_fuzzy_tier_below_ten(self):
        score = sg.score_candidate(self.zurich, "Zurik")
        assert 0 < score < 10

    def test_exact_name_beats_everything(self):
        c = Candidate("city", "Springfield", "Springfield", ["Springfield"])
        assert sg.score_candidate(c, "springfield") == 100

    def test_exact_alternate_beats_contains_name(self):
        c = Candidate("city", "Rome City", None, ["Rome"])
        assert sg.score_candidate(c, "rome") == 90

    def test_ascii_tiers_only_for_cities(self):
        country = Candidate("country", "Deutschland", "Germany", [])
        assert sg.score_candidate(country, "Germany") < 10
        assert sg.score_candidate(country, "erman") < 10

    def test_fuzzy_uses_best_name(self):
        c = Candidate("city", "Tokyo", None, ["Londres", "Lundun"])
        assert sg.score_candidate(c, "Londrs") == pytest.approx(
            similarity("Londrs", "Londres") * 10
        )


class TestMatchCandidate:
    def test_textual_match_always_kept(self):
        assert sg.match_candidate(Candidate("city", "Paris"), "ari", threshold=0.99) == 80

    def test_below_threshold_dropped(self):
        assert sg.match_candidate(Candidate("city", "Paris"), "Tokyo") is None

    def test_threshold_is_strict(self):
        c = Candidate("city", "London")
        assert sg.match_candidate(c, "Londn", threshold=4 / 9) is None
        assert sg.match_candidate(c, "Londn", threshold=0.3) == pytest.approx(40 / 9)


class TestBuildTranslations:
    def test_last_value_wins_and_english_added(self):
        alts = [
            AlternateName(1, 1, "la", "Lutetia"),
            AlternateName(2, 1, "la", "Lutetia Parisiorum"),
        ]
        assert sg.build_translations("Paris", alts) == {
            "la": "Lutetia Parisiorum", "en": "Paris",
        }

    def test_existing_english_kept(self):
        alts = [AlternateName(1, 1, "en", "Bombay")]
        assert sg.build_translations("Mumbai", alts) == {"en": "Bombay"}


# ---------------------------------------------------------------------------
# search: validation
# ---------------------------------------------------------------------------

class TestSearchValidation:
    @pytest.mark.parametrize("query", ["a", "", "  b  ", None])
    def test_short_query_rejected_before_store_access(self, query):
        store = MagicMock()
        with pytest.raises(ValidationError, match="at least 2 characters"):
            sg.search(store, query)
        assert store.method_calls == []

    @pytest.mark.parametrize("limit", [0, -3, "many"])
    def test_bad_limit(self, limit):
        store = MagicMock()
        with pytest.raises(ValidationError):
            sg.search(store, "London", limit=limit)
        assert store.method_calls == []

    def test_unexpected_failure_is_internal_error(self):
        store = MagicMock()
        store.iter_countries.side_effect = RuntimeError("connection lost")
        with pytest.raises(InternalError, match="Internal server error"):
            sg.search(store, "London")


# ---------------------------------------------------------------------------
# search: results
# ---------------------------------------------------------------------------

class TestSearch:
    def test_exact_name_ranks_first(self, store):
        response = sg.search(store, "London")
        assert [r.score for r in response.results[:2]] == [100, 100]
        assert [r.geonameid for r in response.results[:2]] == [2643743, 6058560]
        assert response.results[2].name == "Londonderry"
        assert response.results[2].score == 80

    def test_results_sorted_by_score(self, store):
        scores = [r.score for r in sg.search(store, "Lon").results]
        assert scores == sorted(scores, reverse=True)

    def test_city_fields(self, store):
        london = _by_id(sg.search(store, "London"))[2643743]
        assert london.country_code == "GB"
        assert london.country_name == "United Kingdom"
        assert london.admin_region == "England"
        assert london.name_translations == {"fr": "Londres", "de": "London", "en": "London"}
        d = london.to_dict()
        assert d["type"] == "city"
        assert d["geonameid"] == 2643743
        assert d["coordinates"] == [51.50853, -0.12574]
        assert "spoken_languages" not in d

    def test_country_filter_is_case_insensitive(self, store):
        lower = sg.search(store, "London", country="gb")
        upper = sg.search(store, "London", country="GB")
        assert [r.to_dict() for r in lower.results] == [r.to_dict() for r in upper.results]
        assert {r.country_code for r in upper.results} == {"GB"}
        assert upper.count == 2

    def test_alternate_name_exact(self, store):
        response = sg.search(store, "Londres")
        assert response.results[0].geonameid == 2643743
        assert response.results[0].score == 90

    def test_ascii_name_tiers(self, store):
        assert _by_id(sg.search(store, "Sao Paulo"))[3448439].score == 95
        assert _by_id(sg.search(store, "Sao Pa"))[3448439].score == 75

    def test_alternate_name_contains(self, store):
        assert _by_id(sg.search(store, "Lutet"))[2988507].score == 70

    def test_unseeded_country_has_no_name(self, store):
        sao = _by_id(sg.search(store, "Sao Paulo"))[3448439]
        assert sao.country_code == "BR"
        assert sao.country_name is None

    def test_fuzzy_match(self, store):
        response = sg.search(store, "Londn")
        ids = [r.geonameid for r in response.results]
        assert 2643743 in ids and 6058560 in ids
        assert 2988507 not in ids
        for r in response.results:
            if r.name == "London":
                assert r.score == pytest.approx(40 / 9)

    def test_translation_variants_match_countries(self, store):
        response = sg.search(store, "Reino Unido", place_type="country")
        assert response.count == 1
        uk = response.results[0]
        assert uk.score == 90
        d = uk.to_dict()
        assert d["type"] == "country"
        assert d["country_code"] == "GB"
        assert d["spoken_languages"] == ["en", "cy"]
        assert d["name_translations"]["fr"] == "Royaume-Uni"
        assert "geonameid" not in d

    def test_type_filter(self, store):
        assert sg.search(store, "France", place_type="country").results[0].score == 100
        assert sg.search(store, "France", place_type="city").count == 0

    def test_unknown_type_ignored(self, store):
        a = sg.search(store, "Paris", place_type="village")
        b = sg.search(store, "Paris")
        assert [r.to_dict() for r in a.results] == [r.to_dict() for r in b.results]

    def test_no_match(self, store):
        response = sg.search(store, "Xyzzyq")
        assert response.count == 0
        assert response.to_dict() == {
            "query": "Xyzzyq", "results": [], "count": 0, "autocomplete": False,
        }

    def test_query_is_stripped(self, store):
        assert sg.search(store, "  Paris ").query == "Paris"


class TestSearchLimits:
    @pytest.fixture
    def many(self, tmp_path):
        s = _new_store(tmp_path, "many.db")
        s.insert_places_if_absent([
            Place(i, "Springfield", 40.0 + i / 100, -89.0, country_code="US")
            for i in range(1, 26)
        ])
        yield s
        s.close()

    def test_default_limit(self, many):
        assert sg.search(many, "Springfield").count == 20

    def test_autocomplete_limit(self, many):
        response = sg.search(many, "Spring", autocomplete=True)
        assert response.count == 10
        assert response.to_dict()["autocomplete"] is True

    def test_explicit_limit(self, many):
        assert sg.search(many, "Springfield", limit=5).count == 5
        assert sg.search(many, "Springfield", limit="30").count == 25

    def test_ties_keep_id_order(self, many):
        ids = [r.geonameid for r in sg.search(many, "Springfield", limit=25).results]
        assert ids == list(range(1, 26))


class TestSearchFallbacks:
    def test_query_of_single_letters_scans_everything(self, store):
        store.insert_places_if_absent([Place(1, "A B Town", 10.0, 10.0, country_code="GB")])
        response = sg.search(store, "a b")
        assert [(r.geonameid, r.score) for r in response.results] == [(1, 80)]

    def test_store_without_name_index(self, store):
        expected = [r.to_dict() for r in sg.search(store, "Lond").results]
        with store.engine.begin() as conn:
            conn.execute(gs.t_name_term.delete())
        assert [r.to_dict() for r in sg.search(store, "Lond").results] == expected

    def test_fuzzy_results_carry_translations(self, store):
        london = _by_id(sg.search(store, "Londn"))[2643743]
        assert london.name_translations == {"fr": "Londres", "de": "London", "en": "London"}


# ---------------------------------------------------------------------------
# search: many places
# ---------------------------------------------------------------------------

def _full_scan(store, query, limit, threshold=sg.DEFAULT_SIMILARITY_THRESHOLD):
    """Rank every place with the scoring ladder, without the name index."""
    ranked = []
    for place, alternates in store.iter_place_name_groups():
        candidate = Candidate("city", place.name, place.ascii_name,
                              [a.name for a in alternates])
        score = sg.match_candidate(candidate, query, threshold)
        if score is not None:
            ranked.append((-score, place.name, place.geonameid))
    ranked.sort()
    return [(pid, -neg) for neg, _, pid in ranked[:limit]]


class TestSearchManyPlaces:
    @pytest.fixture(scope="class")
    def towns(self, tmp_path_factory):
        s = _new_store(tmp_path_factory.mktemp("towns"))
        s.insert_places_if_absent([
            Place(i, f"Town{i}", (i % 180) - 90.0, 0.0, country_code="GB" if i % 2 else "FR")
            for i in range(1, 2001)
        ])
        alternates = []
        for i in range(3, 2001, 3):
            alternates.append(AlternateName(2 * i, i, "fr", f"Ville {i}"))
            alternates.append(AlternateName(2 * i + 1, i, "de", f"Stadt{i}"))
        s.insert_alternate_names_if_absent(alternates)
        yield s
        s.close()

    def test_exact_then_contained(self, towns):
        response = sg.search(towns, "Town42")
        assert (response.results[0].geonameid, response.results[0].score) == (42, 100)
        assert [r.geonameid for r in response.results[1:11]] == list(range(420, 430))
        assert {r.score for r in response.results[1:11]} == {80}

    @pytest.mark.parametrize("query, limit", [
        ("Town42", 20),
        ("Twn42", 20),
        ("Twn42", 50),
        ("Towm42", 20),
        ("Towm42", 5),
        ("Ville 7", 20),
        ("Stadt1", 30),
        ("own19", 20),
        ("Town", 5),
    ])
    def test_same_ranking_as_a_full_scan(self, towns, query, limit):
        response = sg.search(towns, query, limit=limit)
        expected = _full_scan(towns, query, limit)
        assert [r.geonameid for r in response.results] == [pid for pid, _ in expected]
        assert [r.score for r in response.results] == pytest.approx(
            [score for _, score in expected]
        )

    def test_country_filter_applies_to_fuzzy_matches(self, towns):
        response = sg.search(towns, "Twn42", country="FR", limit=50)
        assert response.count > 0
        assert {r.country_code for r in response.results} == {"FR"}

    def test_translations_of_every_result(self, towns):
        for r in sg.search(towns, "Twn42", limit=50).results:
            assert r.name_translations == sg.build_translations(
                r.name, towns.alternate_names_for(r.geonameid)
            )


# ---------------------------------------------------------------------------
# search: after a load
# ---------------------------------------------------------------------------

def _place_line(geonameid, name, lat, lon, country) -> str:
    return "\t".join([
        str(geonameid), name, name, "", str(lat), str(lon), "P", "PPL",
        country, "", "", "", "", "", "1000", "", "10", "UTC", "2023-01-12",
    ])


def _alt_line(altid, geonameid, lang, name) -> str:
    return "\t".join([str(altid), str(geonameid), lang, name, "", "", "", "", "", ""])


class TestSearchAfterLoading:
    def test_orphan_alternate_names_never_reach_translations(self, tmp_path):
        places = tmp_path / "cities15000.txt"
        places.write_text("\n".join([
            _place_line(2643743, "London", 51.50853, -0.12574, "GB"),
            _place_line(6058560, "London", 42.98339, -81.23304, "CA"),
        ]) + "\n", encoding="utf-8")
        alternates = tmp_path / "alternateNamesV2.txt"
        alternates.write_text("\n".join([
            _alt_line(1, 2643743, "fr", "Londres"),
            _alt_line(2, 999999, "la", "Londonium"),
            _alt_line(3, 999999, "en", "London"),
        ]) + "\n", encoding="utf-8")

        s = _new_store(tmp_path)
        lg.load_places(s, places, progress_every=0)
        assert lg.load_alternate_names(s, alternates, progress_every=0).inserted == 1

        for query in ("London", "Londonium", "Londres", "Lond", "nium"):
            for r in sg.search(s, query).results:
                assert r.geonameid in (2643743, 6058560)
                assert "Londonium" not in r.name_translations.values()
        by_id = _by_id(sg.search(s, "Londonium"))
        assert set(by_id) == {2643743, 6058560}
        assert by_id[2643743].name_translations == {"fr": "Londres", "en": "London"}
        assert by_id[6058560].name_translations == {"en": "London"}
        s.close()
