"""
Correlate package: expose linker functionality for attaching comments to their parent events.
"""

from .linker import link_parent_events, update_activity_metadata, validate_relationships

__all__ = ["link_parent_events", "update_activity_metadata", "validate_relationships"]
