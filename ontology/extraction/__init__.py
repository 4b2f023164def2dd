"""
Ontology Extraction Module
==========================

Rule-based entity extraction.
"""

from .entity_extractor import EntityExtractor, ExtractedEntity, ExtractorConfig

__all__ = ["EntityExtractor", "ExtractedEntity", "ExtractorConfig"]
