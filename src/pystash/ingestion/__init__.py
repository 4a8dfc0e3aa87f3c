"""Ingestion layer.

Adapters that receive data from the change feed and turn it into
normalized :class:`pystash.state.events.ChangeFeedEvent` objects, plus the
idempotent rules that merge those events into cached collection data.
"""

__all__: list[str] = []
