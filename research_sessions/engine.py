from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from research_sessions.executor import TaskExecutor
from research_sessions.history import HistoryLedger
from research_sessions.knowledge import KnowledgeBaseDirectory, KnowledgeLinkRegistry
from research_sessions.lifecycle import LifecycleController
from research_sessions.recorder import TaskRecorder
from research_sessions.store import SessionStore
from research_sessions.stream import ProgressPublisher, RunCoordinator


@dataclass
class ResearchEngine:
    store: SessionStore
    ledger: HistoryLedger
    controller: LifecycleController
    recorder: TaskRecorder
    knowledge: KnowledgeLinkRegistry
    publisher: ProgressPublisher
    runs: RunCoordinator


def build_engine(
    data_dir: Path | str,
    config: Optional[Dict[str, Any]] = None,
    executor: Optional[TaskExecutor] = None,
    knowledge_directory: Optional[KnowledgeBaseDirectory] = None,
) -> ResearchEngine:
    config = config or {}
    retries = int(config.get("conflict_retry_attempts", 3))
    store = SessionStore(data_dir)
    ledger = HistoryLedger(store, conflict_retry_attempts=retries)
    controller = LifecycleController(
        store,
        ledger,
        default_estimated_duration=int(config.get("default_estimated_duration", 30)),
        continuation_ratio=float(config.get("continuation_ratio", 0.7)),
        continuation_report_prefix_chars=int(config.get("continuation_report_prefix_chars", 500)),
        conflict_retry_attempts=retries,
    )
    recorder = TaskRecorder(
        store,
        max_task_retries=int(config.get("max_task_retries", 2)),
        conflict_retry_attempts=retries,
    )
    knowledge = KnowledgeLinkRegistry(store, knowledge_directory, conflict_retry_attempts=retries)
    publisher = ProgressPublisher()
    runs = RunCoordinator(controller, recorder, publisher, executor)
    return ResearchEngine(
        store=store,
        ledger=ledger,
        controller=controller,
        recorder=recorder,
        knowledge=knowledge,
        publisher=publisher,
        runs=runs,
    )
