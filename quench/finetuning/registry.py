"""Registry of fine-tuned models, their inference endpoints and pruning rules.

This module provides functionality for:
- Registering fine-tuned models under a unique slug
- Managing the inference endpoint URLs that serve each model
- Managing pruning rules, the literal strings scrubbed from input messages
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
import structlog

from quench.persistence.database import Database

log = structlog.get_logger()


@dataclass
class PruningRule:
    """A literal string removed from message content before templating."""

    text_to_match: str
    fine_tune_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class FineTune:
    """A fine-tuned model entry.

    Attributes:
        slug: Name clients use to address the model
        base_model: Model the fine-tune was trained from
        inference_urls: Interchangeable endpoints serving the model
        id: Unique identifier
        created_at: When the model was registered
    """

    slug: str
    base_model: str
    inference_urls: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "slug": self.slug,
            "base_model": self.base_model,
            "inference_urls": list(self.inference_urls),
            "created_at": self.created_at.isoformat(),
        }


class FineTuneRegistry:
    """Stores fine-tuned models and pruning rules in SQLite.

    Serves as the endpoint and pruning-rule provider for the completion
    service.
    """

    def __init__(self, database: Optional[Database] = None):
        """Initialize the registry.

        Args:
            database: Database instance (uses default if not provided)
        """
        self.db = database or Database()

    async def create_fine_tune(
        self,
        slug: str,
        base_model: str,
        inference_urls: Optional[list[str]] = None,
    ) -> FineTune:
        """Register a new fine-tuned model.

        Raises:
            ValueError: If the slug is empty or already registered
        """
        slug = slug.strip()
        if not slug:
            raise ValueError("Fine-tune slug cannot be empty")
        if await self.get_by_slug(slug):
            raise ValueError(f"Fine-tune already exists: {slug}")

        fine_tune = FineTune(
            slug=slug,
            base_model=base_model,
            inference_urls=list(inference_urls or []),
        )

        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO fine_tunes (id, slug, base_model, inference_urls_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    fine_tune.id,
                    fine_tune.slug,
                    fine_tune.base_model,
                    json.dumps(fine_tune.inference_urls),
                    fine_tune.created_at.isoformat(),
                ),
            )
            await conn.commit()

        log.info("fine_tune_registered", slug=slug, fine_tune_id=fine_tune.id)
        return fine_tune

    async def get_by_slug(self, slug: str) -> Optional[FineTune]:
        """Get a fine-tune by slug, or None if unknown."""
        async with self.db.get_connection() as conn:
            async with conn.execute(
                "SELECT * FROM fine_tunes WHERE slug = ?", (slug,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_fine_tune(row) if row else None

    async def get_by_id(self, fine_tune_id: str) -> Optional[FineTune]:
        """Get a fine-tune by ID, or None if unknown."""
        async with self.db.get_connection() as conn:
            async with conn.execute(
                "SELECT * FROM fine_tunes WHERE id = ?", (fine_tune_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return self._row_to_fine_tune(row) if row else None

    async def list_fine_tunes(self) -> list[FineTune]:
        """List all fine-tunes, newest first."""
        async with self.db.get_connection() as conn:
            async with conn.execute(
                "SELECT * FROM fine_tunes ORDER BY created_at DESC"
            ) as cursor:
                return [self._row_to_fine_tune(row) async for row in cursor]

    async def get_endpoints(self, slug: str) -> list[str]:
        """Get the inference endpoint URLs of a model ([] if unknown)."""
        fine_tune = await self.get_by_slug(slug)
        return list(fine_tune.inference_urls) if fine_tune else []

    async def set_inference_urls(self, slug: str, urls: list[str]) -> bool:
        """Replace the endpoint URLs of a model.

        Returns:
            True if updated, False if the slug is unknown
        """
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "UPDATE fine_tunes SET inference_urls_json = ? WHERE slug = ?",
                (json.dumps(urls), slug),
            )
            await conn.commit()
            updated = cursor.rowcount > 0

        if updated:
            log.info("inference_urls_updated", slug=slug, count=len(urls))
        return updated

    async def add_inference_url(self, slug: str, url: str) -> bool:
        """Append an endpoint URL to a model (no-op if already present)."""
        fine_tune = await self.get_by_slug(slug)
        if fine_tune is None:
            return False
        if url in fine_tune.inference_urls:
            return True
        return await self.set_inference_urls(slug, fine_tune.inference_urls + [url])

    async def add_pruning_rule(self, fine_tune_id: str, text_to_match: str) -> PruningRule:
        """Add a pruning rule to a model.

        Raises:
            ValueError: If the text is empty
        """
        if not text_to_match:
            raise ValueError("Pruning rule text cannot be empty")

        rule = PruningRule(text_to_match=text_to_match, fine_tune_id=fine_tune_id)
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO pruning_rules (id, fine_tune_id, text_to_match, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (rule.id, rule.fine_tune_id, rule.text_to_match, rule.created_at.isoformat()),
            )
            await conn.commit()

        log.info("pruning_rule_added", fine_tune_id=fine_tune_id, rule_id=rule.id)
        return rule

    async def delete_pruning_rule(self, rule_id: str) -> bool:
        """Delete a pruning rule. Returns False if it did not exist."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute("DELETE FROM pruning_rules WHERE id = ?", (rule_id,))
            await conn.commit()
            return cursor.rowcount > 0

    async def list_pruning_rules(self, fine_tune_id: str) -> list[PruningRule]:
        """List the pruning rules of a model in application order."""
        async with self.db.get_connection() as conn:
            async with conn.execute(
                """
                SELECT * FROM pruning_rules
                WHERE fine_tune_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (fine_tune_id,),
            ) as cursor:
                return [
                    PruningRule(
                        id=row["id"],
                        fine_tune_id=row["fine_tune_id"],
                        text_to_match=row["text_to_match"],
                        created_at=datetime.fromisoformat(row["created_at"]),
                    )
                    async for row in cursor
                ]

    async def get_pruning_rules(self, model_id: str) -> list[str]:
        """Get the strings to prune for a model, in application order."""
        return [rule.text_to_match for rule in await self.list_pruning_rules(model_id)]

    def _row_to_fine_tune(self, row) -> FineTune:
        return FineTune(
            id=row["id"],
            slug=row["slug"],
            base_model=row["base_model"],
            inference_urls=json.loads(row["inference_urls_json"] or "[]"),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
