from .enricher import MetadataEnricher
from .lookup import CanonicalMetadata, MetadataLookup
from .tagger import TagWriter

__all__ = ["CanonicalMetadata", "MetadataEnricher", "MetadataLookup", "TagWriter"]
