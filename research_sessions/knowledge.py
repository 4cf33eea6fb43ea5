import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from research_sessions.errors import NotFoundError
from research_sessions.models import KnowledgeLink, LinkKnowledgeRequest
from research_sessions.store import SessionStore, ensure_owner, retry_on_conflict


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeBaseDirectory:
    def __init__(self, knowledge_bases: Dict[str, Set[str]]) -> None:
        self._knowledge_bases = {str(k): set(v) for k, v in knowledge_bases.items()}

    @classmethod
    def from_file(cls, path: Path | str) -> "KnowledgeBaseDirectory":
        """Load ``{"knowledge_bases": [{"id": ..., "documents": [...]}, ...]}``."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = raw.get("knowledge_bases", []) if isinstance(raw, dict) else []
        knowledge_bases: Dict[str, Set[str]] = {}
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict):
                continue
            kb_id = str(entry.get("id", "")).strip()
            if not kb_id:
                continue
            docs = entry.get("documents", [])
            knowledge_bases[kb_id] = {
                str(d).strip() for d in (docs if isinstance(docs, list) else []) if str(d).strip()
            }
        return cls(knowledge_bases)

    def has_knowledge_base(self, knowledge_base_id: str) -> bool:
        return knowledge_base_id in self._knowledge_bases

    def has_document(self, knowledge_base_id: str, document_id: str) -> bool:
        return document_id in self._knowledge_bases.get(knowledge_base_id, set())


class KnowledgeLinkRegistry:
    def __init__(
        self,
        store: SessionStore,
        directory: Optional[KnowledgeBaseDirectory] = None,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self._store = store
        self._directory = directory
        self._retry_attempts = max(1, int(conflict_retry_attempts))

    def link(
        self, session_id: str, user_id: str, req: LinkKnowledgeRequest
    ) -> tuple[KnowledgeLink, bool]:
        # Relinking counts an access; returns the link and whether it is new.
        if self._directory is not None:
            if not self._directory.has_knowledge_base(req.knowledge_base_id):
                raise NotFoundError("Knowledge base not found")
            if req.document_id and not self._directory.has_document(
                req.knowledge_base_id, req.document_id
            ):
                raise NotFoundError("Document not found")

        def op() -> tuple[KnowledgeLink, bool]:
            with self._store.transaction(session_id) as bundle:
                ensure_owner(bundle, user_id)
                now = _now()
                for idx, existing in enumerate(bundle.knowledge_links):
                    if (
                        existing.knowledge_base_id == req.knowledge_base_id
                        and existing.document_id == (req.document_id or None)
                    ):
                        changes = {
                            "link_type": req.link_type,
                            "access_count": existing.access_count + 1,
                            "last_accessed_at": now,
                            "updated_at": now,
                        }
                        if req.usage_context is not None:
                            changes["usage_context"] = req.usage_context
                        if req.relevance_score is not None:
                            changes["relevance_score"] = req.relevance_score
                        updated = existing.model_copy(update=changes)
                        bundle.knowledge_links[idx] = updated
                        return updated, False
                link = KnowledgeLink(
                    id=uuid.uuid4().hex,
                    session_id=session_id,
                    knowledge_base_id=req.knowledge_base_id,
                    document_id=req.document_id or None,
                    link_type=req.link_type,
                    usage_context=req.usage_context,
                    relevance_score=req.relevance_score,
                    access_count=1,
                    last_accessed_at=now,
                    created_at=now,
                    updated_at=now,
                )
                bundle.knowledge_links.append(link)
            return link, True

        link, created = retry_on_conflict(op, self._retry_attempts)
        if created:
            logger.info(
                "linked knowledge base %s to research session %s", req.knowledge_base_id, session_id
            )
        return link, created

    def list(self, session_id: str, user_id: str) -> List[KnowledgeLink]:
        bundle = self._store.read(session_id)
        if bundle is None:
            raise NotFoundError("Research session not found")
        ensure_owner(bundle, user_id)
        # Highest relevance first; unscored links last.
        return sorted(
            bundle.knowledge_links,
            key=lambda link: (link.relevance_score is None, -(link.relevance_score or 0.0)),
        )

    def unlink(self, session_id: str, user_id: str, link_id: str) -> KnowledgeLink:
        def op() -> KnowledgeLink:
            with self._store.transaction(session_id) as bundle:
                ensure_owner(bundle, user_id)
                for idx, link in enumerate(bundle.knowledge_links):
                    if link.id == link_id:
                        del bundle.knowledge_links[idx]
                        return link
                raise NotFoundError("Knowledge link not found")

        removed = retry_on_conflict(op, self._retry_attempts)
        logger.info("unlinked knowledge base %s from research session %s", removed.knowledge_base_id, session_id)
        return removed
