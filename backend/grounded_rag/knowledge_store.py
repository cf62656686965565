"""
Knowledge Store Module

Vector search over partitioned, tagged document records in Pinecone.

Each record is one partition of one source document. Its id is
``"{document_id}#{partition_number}"`` so neighbouring partitions can be
fetched by id and a document's readiness can be checked by id prefix.
Record metadata::

    document_id, source_name, partition_number, text,
    intent, mainintent, keywords   (string lists)

Documents and intent examples live in separate namespaces of one index.
"""

import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pinecone import Pinecone

from langsmith import traceable

from .config import (
    ASK_LIMIT,
    ASK_PROMPT_FILE,
    DOCUMENTS_NAMESPACE,
    PINECONE_API_KEY,
    PINECONE_INDEX_NAME,
)
from .embeddings import Embedder, get_embedder
from .exceptions import CollaboratorError
from .llm import ChatModel, get_chat_model
from .models import DirectAnswer, RetrievedFragment, StoreHit, StorePartition, TagFilter
from .prompts import load_prompt

logger = logging.getLogger(__name__)

TAG_FIELDS = ("intent", "mainintent", "keywords")

NOT_FOUND_ANSWER = "INFO NOT FOUND"

_DEFAULT_ASK_PROMPT = (
    "Facts:\n{facts}\n"
    "======\n"
    "Given only the facts above, provide a comprehensive answer.\n"
    "You don't know where the knowledge comes from, just answer.\n"
    "If you don't have sufficient information, reply with '" + NOT_FOUND_ANSWER + "'.\n"
    "Question: {question}\n"
    "Answer: "
)


def record_id(document_id: str, partition_number: int) -> str:
    return f"{document_id}#{partition_number}"


def build_metadata_filter(filters: Sequence[TagFilter]) -> Optional[Dict[str, Any]]:
    """
    Translate tag filters into a Pinecone metadata filter.

    Values of the same key are OR-ed with ``$in``; different keys are OR-ed
    with ``$or``, so the whole list is a union.
    """
    grouped: Dict[str, List[str]] = {}
    for f in filters:
        values = grouped.setdefault(f.key, [])
        if f.value not in values:
            values.append(f.value)
    if not grouped:
        return None
    clauses = [{key: {"$in": values}} for key, values in grouped.items()]
    if len(clauses) == 1:
        return clauses[0]
    return {"$or": clauses}


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _partition_from_metadata(metadata: Dict[str, Any], relevance: float) -> StorePartition:
    tags = {field: _as_list(metadata.get(field)) for field in TAG_FIELDS if metadata.get(field)}
    return StorePartition(
        # Pinecone stores numbers as floats
        partition_number=int(metadata.get("partition_number", 0)),
        text=metadata.get("text", ""),
        relevance=relevance,
        tags=tags,
    )


class KnowledgeStore:
    """Interface the retrieval and intent components depend on."""

    def search(
        self,
        query: str,
        filters: Optional[Sequence[TagFilter]] = None,
        min_relevance: float = 0.0,
        limit: int = 3,
        namespace: Optional[str] = None,
    ) -> List[StoreHit]:
        raise NotImplementedError

    def fetch_partitions(self, document_id: str, partition_numbers: Iterable[int]) -> List[StorePartition]:
        raise NotImplementedError

    def ask_direct(self, query: str, min_relevance: float) -> DirectAnswer:
        raise NotImplementedError

    def is_document_ready(self, document_id: str) -> bool:
        raise NotImplementedError

    def delete_index(self, namespace: Optional[str] = None) -> None:
        raise NotImplementedError

    def upsert_texts(self, records: Sequence[Tuple[str, str, Dict[str, Any]]], namespace: str) -> int:
        raise NotImplementedError


class PineconeKnowledgeStore(KnowledgeStore):
    """Pinecone-backed store; embeddings and ask-mode answers come from injected collaborators."""

    def __init__(
        self,
        index=None,
        embedder: Optional[Embedder] = None,
        llm: Optional[ChatModel] = None,
        namespace: str = DOCUMENTS_NAMESPACE,
    ):
        if index is None:
            self.pc = Pinecone(api_key=PINECONE_API_KEY)
            index = self.pc.Index(PINECONE_INDEX_NAME)
        self.index = index
        self.embedder = embedder or get_embedder()
        self._llm = llm
        self.namespace = namespace

    @property
    def llm(self) -> ChatModel:
        if self._llm is None:
            self._llm = get_chat_model("main")
        return self._llm

    @traceable(name="knowledge_store.search", run_type="retriever")
    def search(
        self,
        query: str,
        filters: Optional[Sequence[TagFilter]] = None,
        min_relevance: float = 0.0,
        limit: int = 3,
        namespace: Optional[str] = None,
    ) -> List[StoreHit]:
        """
        Similarity search, grouped per document.

        Hits below ``min_relevance`` are dropped. Documents are returned in
        the order of their best partition, partitions in relevance order.
        """
        namespace = namespace or self.namespace
        metadata_filter = build_metadata_filter(filters or [])

        try:
            t_embed = time.perf_counter()
            vector = self.embedder.embed(query)
            embed_seconds = time.perf_counter() - t_embed

            t_query = time.perf_counter()
            query_kwargs: Dict[str, Any] = {
                "vector": vector,
                "namespace": namespace,
                "top_k": limit,
                "include_metadata": True,
            }
            if metadata_filter:
                query_kwargs["filter"] = metadata_filter
            results = self.index.query(**query_kwargs)
            query_seconds = time.perf_counter() - t_query
        except Exception as exc:
            raise CollaboratorError(f"Knowledge store search failed: {exc}") from exc

        hits: Dict[str, StoreHit] = {}
        for match in results.matches:
            score = float(match.score or 0.0)
            if score < min_relevance:
                continue
            metadata = match.metadata or {}
            document_id = str(metadata.get("document_id") or match.id.split("#", 1)[0])
            hit = hits.get(document_id)
            if hit is None:
                hit = StoreHit(document_id=document_id, source_name=metadata.get("source_name", ""))
                hits[document_id] = hit
            hit.partitions.append(_partition_from_metadata(metadata, score))

        logger.debug(
            "Store search timings: embed=%.2fs pinecone=%.2fs limit=%d namespace=%s filtered=%s hits=%d",
            embed_seconds, query_seconds, limit, namespace, bool(metadata_filter), len(hits),
        )
        return list(hits.values())

    @traceable(name="knowledge_store.fetch_partitions", run_type="retriever")
    def fetch_partitions(self, document_id: str, partition_numbers: Iterable[int]) -> List[StorePartition]:
        """Point lookup of specific partitions of one document; missing ones are skipped."""
        wanted = [n for n in partition_numbers if n >= 0]
        if not wanted:
            return []
        try:
            response = self.index.fetch(
                ids=[record_id(document_id, n) for n in wanted],
                namespace=self.namespace,
            )
        except Exception as exc:
            raise CollaboratorError(f"Partition lookup failed for {document_id}: {exc}") from exc

        vectors = response.vectors or {}
        partitions = []
        for n in wanted:
            record = vectors.get(record_id(document_id, n))
            if record is None:
                continue
            partitions.append(_partition_from_metadata(record.metadata or {}, 0.0))
        return partitions

    @property
    def ask_prompt(self) -> str:
        return load_prompt(ASK_PROMPT_FILE, _DEFAULT_ASK_PROMPT)

    @traceable(name="knowledge_store.ask_direct", run_type="chain")
    def ask_direct(self, query: str, min_relevance: float) -> DirectAnswer:
        """
        Answer ``query`` straight from the store (the permissive "ask" mode).

        Runs an unfiltered search and has the text-generation collaborator
        answer over the found facts. No facts means an empty answer.
        """
        hits = self.search(query, None, min_relevance=min_relevance, limit=ASK_LIMIT)
        sources = [
            RetrievedFragment(
                document_id=hit.document_id,
                source_name=hit.source_name,
                partition_number=p.partition_number,
                text=p.text,
                relevance_score=p.relevance,
            )
            for hit in hits
            for p in hit.partitions
        ]
        if not sources:
            logger.info("Ask mode found no facts above relevance %.2f", min_relevance)
            return DirectAnswer(answer_text="", sources=[])

        facts = "\n".join(f"==== {s.citation}\n{s.text}" for s in sources)
        try:
            answer = self.llm.generate(self.ask_prompt.format(facts=facts, question=query), temperature=0.0)
        except Exception as exc:
            raise CollaboratorError(f"Ask-mode generation failed: {exc}") from exc

        answer = (answer or "").strip()
        if answer.upper().startswith(NOT_FOUND_ANSWER):
            answer = ""
        return DirectAnswer(answer_text=answer, sources=sources)

    def is_document_ready(self, document_id: str) -> bool:
        try:
            for page in self.index.list(prefix=f"{document_id}#", namespace=self.namespace):
                if page:
                    return True
        except Exception as exc:
            logger.warning("Readiness check failed for %s: %s", document_id, exc)
        return False

    def delete_index(self, namespace: Optional[str] = None) -> None:
        namespace = namespace or self.namespace
        try:
            self.index.delete(delete_all=True, namespace=namespace)
        except Exception as exc:
            raise CollaboratorError(f"Deleting namespace '{namespace}' failed: {exc}") from exc
        logger.info("Deleted all records in namespace '%s'", namespace)

    def upsert_texts(
        self,
        records: Sequence[Tuple[str, str, Dict[str, Any]]],
        namespace: str,
        batch_size: int = 50,
    ) -> int:
        """Embed and upsert ``(id, text, metadata)`` records; returns the count written."""
        written = 0
        for start in range(0, len(records), batch_size):
            batch = records[start:start + batch_size]
            vectors = [
                {
                    "id": rid,
                    "values": self.embedder.embed(text),
                    "metadata": {**metadata, "text": text},
                }
                for rid, text, metadata in batch
            ]
            try:
                self.index.upsert(vectors=vectors, namespace=namespace)
            except Exception as exc:
                raise CollaboratorError(f"Upsert into '{namespace}' failed: {exc}") from exc
            written += len(vectors)
        logger.info("Upserted %d records into namespace '%s'", written, namespace)
        return written


# Singleton instance
_knowledge_store: Optional[KnowledgeStore] = None


def get_knowledge_store() -> KnowledgeStore:
    """Get or create the KnowledgeStore singleton."""
    global _knowledge_store
    if _knowledge_store is None:
        _knowledge_store = PineconeKnowledgeStore()
    return _knowledge_store
