"""
Vehicle Search Module: query composition, retrieval strategy, ranking.

Provides:
- ConstraintParser / AttributeMapper: extracted entities -> constraints
- QueryComposer / ConflictResolver / ODataTranslator: constraints -> filter
- SearchOrchestrator / RRFMerger: exact, semantic and hybrid retrieval
- ConceptualMapper / SimilarityScorer: qualitative-term scoring, explanations
- ResultRankingService / DiversityEnhancer: re-ranking and diversity
- VehicleSearchPipeline: the above wired end to end
"""

from search.attribute_mapper import AttributeMapper
from search.conceptual_mapper import ConceptualMapper
from search.conflict_resolver import ConflictResolver
from search.constraint_parser import ConstraintParser, OperatorInference
from search.diversity import DiversityEnhancer
from search.odata import ODataTranslator
from search.orchestrator import SearchOrchestrator
from search.pipeline import VehicleSearchPipeline, get_search_pipeline
from search.query_composer import QueryComposer
from search.ranking import ResultRankingService
from search.rrf import RRFMerger
from search.similarity import SimilarityScorer

__all__ = [
    "AttributeMapper",
    "ConceptualMapper",
    "ConflictResolver",
    "ConstraintParser",
    "DiversityEnhancer",
    "ODataTranslator",
    "OperatorInference",
    "QueryComposer",
    "RRFMerger",
    "ResultRankingService",
    "SearchOrchestrator",
    "SimilarityScorer",
    "VehicleSearchPipeline",
    "get_search_pipeline",
]
