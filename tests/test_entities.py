"""
实体抽取协作方测试
"""
import pytest
from langchain_core.language_models import FakeListLLM
from langchain_core.runnables import RunnableLambda

from core.exceptions import ConfigurationError, ExtractionError
from core.schemas import EntityExtraction
from infra.nlp.entities import (
    HeuristicEntityExtractor, LLMEntityExtractor, get_entity_extractor
)


class TestHeuristicEntityExtractor:

    def test_people_places_and_dates(self):
        result = HeuristicEntityExtractor()("John walked to Paris on Monday.")
        assert isinstance(result, EntityExtraction)
        assert result.people == ("John",)
        assert result.places == ("Paris",)
        assert result.dates == ("Monday",)

    def test_full_dates_and_years(self):
        extractor = HeuristicEntityExtractor()
        assert extractor.extract_dates("It began on March 3, 1990.") == ["March 3, 1990"]
        assert extractor.extract_dates("In 1990 she left.") == ["1990"]

    def test_sentence_initial_words_are_not_people(self):
        extractor = HeuristicEntityExtractor()
        assert extractor.extract_people("Then Maria smiled. The door opened.") == ["Maria"]

    def test_duplicates_removed(self):
        extractor = HeuristicEntityExtractor()
        assert extractor.extract_people("Maria ran. Maria fell.") == ["Maria"]

    def test_sentiment_score_range(self):
        extractor = HeuristicEntityExtractor()
        assert extractor.sentiment_score("A happy day.") == 1.0
        assert extractor.sentiment_score("Nothing to report.") == 0.0
        assert extractor.sentiment_score("sad fear happy") == pytest.approx(-1 / 3)


class TestLLMEntityExtractor:

    def test_parses_json_response(self):
        llm = FakeListLLM(responses=['{"people": ["Ann"], "places": ["Rome"], "dates": [], "sentiment_score": 0.5}'])
        result = LLMEntityExtractor(llm=llm)("Ann was in Rome.")
        assert result.people == ("Ann",)
        assert result.places == ("Rome",)
        assert result.dates == ()
        assert result.sentiment_score == 0.5

    def test_accepts_alternative_keys(self):
        chain = RunnableLambda(lambda _: {"characters": ["Ann", "Ann"], "locations": "Rome", "sentimentScore": -1})
        result = LLMEntityExtractor(chain=chain)("text")
        assert result.people == ("Ann",)
        assert result.places == ("Rome",)
        assert result.sentiment_score == -1.0

    def test_invalid_json_raises_extraction_error(self):
        llm = FakeListLLM(responses=["this is not json"])
        with pytest.raises(ExtractionError):
            LLMEntityExtractor(llm=llm)("Ann was in Rome.")

    def test_non_object_result_raises_extraction_error(self):
        chain = RunnableLambda(lambda _: ["Ann"])
        with pytest.raises(ExtractionError):
            LLMEntityExtractor(chain=chain)("text")


class TestExtractorSelection:

    def test_heuristic_backend(self):
        assert isinstance(get_entity_extractor({"extraction": {"backend": "heuristic"}}), HeuristicEntityExtractor)

    def test_default_backend_is_heuristic(self):
        assert isinstance(get_entity_extractor({}), HeuristicEntityExtractor)

    def test_llm_backend_is_lazy(self):
        extractor = get_entity_extractor({"extraction": {"backend": "llm"}})
        assert isinstance(extractor, LLMEntityExtractor)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            get_entity_extractor({"extraction": {"backend": "oracle"}})
