"""
Services package for EPG Indexer

This package contains all business logic and service layer components.
"""
from epg_indexer.services.automap_service import auto_map_channels, similarity
from epg_indexer.services.epg_refresh_service import refresh_epg, start_background_refresh
from epg_indexer.services.index_store import IndexStore, combine_indexes
from epg_indexer.services.refresh_coordinator import get_refresh_coordinator
from epg_indexer.services.scheduler_service import epg_scheduler
from epg_indexer.services.xmltv_index_service import build_identity_index, index_file
from epg_indexer.services.xmltv_merge_service import merge_documents

__all__ = [
    'IndexStore',
    'auto_map_channels',
    'build_identity_index',
    'combine_indexes',
    'epg_scheduler',
    'get_refresh_coordinator',
    'index_file',
    'merge_documents',
    'refresh_epg',
    'similarity',
    'start_background_refresh',
]
