from src.services.location_extraction import (
    GazetteerMatcher,
    LocationExtractor,
    build_extractor,
)


def test_city_country_pattern_wins_first() -> None:
    extractor = LocationExtractor()

    assert extractor.extract("Shelling reported near Kyiv, Ukraine overnight") == "Kyiv, Ukraine"


def test_in_and_at_prefixes_are_stripped() -> None:
    extractor = LocationExtractor()

    assert extractor.extract("protest held in Buenos Aires today") == "Buenos Aires"
    assert extractor.extract("crowds gathered at Trafalgar Square") == "Trafalgar Square"


def test_no_candidate_returns_none() -> None:
    extractor = LocationExtractor()

    assert extractor.extract("markets rallied on strong earnings") is None
    assert extractor.extract("") is None
    assert extractor.extract(None) is None


def test_description_is_fallback_for_title() -> None:
    extractor = LocationExtractor()

    assert extractor.extract_from_item("quiet night", "storm damage in Houston") == "Houston"
    assert extractor.extract_from_item("storm damage in Tulsa", "storm damage in Houston") == "Tulsa"


def test_custom_matchers_replace_the_chain() -> None:
    calls: list[str] = []

    def first(text: str) -> None:
        calls.append("first")
        return None

    def second(text: str) -> str:
        calls.append("second")
        return "Somewhere"

    extractor = LocationExtractor([first, second])

    assert extractor.extract("anything") == "Somewhere"
    assert calls == ["first", "second"]


def test_gazetteer_matcher_is_appended_on_request() -> None:
    assert not any(isinstance(m, GazetteerMatcher) for m in build_extractor().matchers)
    extractor = build_extractor(use_gazetteer=True)
    assert isinstance(extractor.matchers[-1], GazetteerMatcher)


def test_gazetteer_matcher_finds_known_city() -> None:
    assert GazetteerMatcher()("Heavy rain hit London overnight") == "London"
