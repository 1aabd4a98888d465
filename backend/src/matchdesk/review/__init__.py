"""Review queue controller.

Keeps a filtered, paginated view of matching records consistent across
polling refreshes, cross-page selection, batch actions and auto-advance.

Components:
- confidence: score normalization
- pipeline: filter, sort and paginate
- selection: cross-page selection
- polling: poll and reconciliation loop
- navigation: next record after an action
- batch: batch operation orchestrator
- session: session-scoped controller wiring the above
- tasks: matching task monitor with stuck task reconciliation
"""

__all__: list[str] = []
