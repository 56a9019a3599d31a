from typing import List

__all__: List[str] = [
    "collection_rebuild",
    "compaction",
    "compaction_orchestrator",
    "confirmation",
    "coordinator",
    "index_rebuild",
    "orphan_reclaimer",
    "rebuild_orchestrator",
    "state_store",
]
