"""Move library entries and their reading state between catalogue sources."""

from .batch import BatchItem, MigrationBatch
from .chapters import Correspondence, build_correspondence
from .migrate import MigrationReport, MigrationStateTransfer, compute_applicable_flags
from .models import Chapter, MigrationFlag, SearchCandidate, TrackRecord, Work
from .search import CandidateSearchEngine, SearchMode
from .titles import build_search_queries, normalize_title, title_similarity

__version__ = "0.1.0"
