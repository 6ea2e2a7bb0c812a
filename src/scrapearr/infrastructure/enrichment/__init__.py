from .cache import EnrichmentCache
from .tmdb import TmdbEnrichmentSource

__all__ = ["EnrichmentCache", "TmdbEnrichmentSource"]
