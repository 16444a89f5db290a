"""Tests for the fine-tune registry."""

import pytest

from quench.finetuning.registry import FineTune


class TestFineTunes:
    """Registration and endpoint management."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, registry):
        created = await registry.create_fine_tune(
            "weather", "llama-2-7b", ["http://gpu-1/generate"]
        )

        by_slug = await registry.get_by_slug("weather")
        by_id = await registry.get_by_id(created.id)

        assert by_slug == by_id
        assert by_slug.base_model == "llama-2-7b"
        assert by_slug.inference_urls == ["http://gpu-1/generate"]

    @pytest.mark.asyncio
    async def test_unknown_slug(self, registry):
        assert await registry.get_by_slug("missing") is None
        assert await registry.get_endpoints("missing") == []

    @pytest.mark.asyncio
    async def test_duplicate_slug_rejected(self, registry):
        await registry.create_fine_tune("weather", "llama-2-7b")

        with pytest.raises(ValueError, match="already exists"):
            await registry.create_fine_tune("weather", "mistral-7b")

    @pytest.mark.asyncio
    async def test_empty_slug_rejected(self, registry):
        with pytest.raises(ValueError):
            await registry.create_fine_tune("  ", "llama-2-7b")

    @pytest.mark.asyncio
    async def test_add_inference_url(self, registry):
        await registry.create_fine_tune("weather", "llama-2-7b", ["http://gpu-1"])

        assert await registry.add_inference_url("weather", "http://gpu-2")
        assert await registry.add_inference_url("weather", "http://gpu-2")
        assert await registry.get_endpoints("weather") == ["http://gpu-1", "http://gpu-2"]

    @pytest.mark.asyncio
    async def test_add_inference_url_unknown_slug(self, registry):
        assert not await registry.add_inference_url("missing", "http://gpu-1")

    @pytest.mark.asyncio
    async def test_list_fine_tunes(self, registry):
        await registry.create_fine_tune("a", "llama-2-7b")
        await registry.create_fine_tune("b", "llama-2-7b")

        slugs = {f.slug for f in await registry.list_fine_tunes()}

        assert slugs == {"a", "b"}

    def test_to_dict(self):
        fine_tune = FineTune(slug="weather", base_model="llama-2-7b", inference_urls=["u"])

        data = fine_tune.to_dict()

        assert data["slug"] == "weather"
        assert data["inference_urls"] == ["u"]
        assert "created_at" in data


class TestPruningRules:
    """Pruning rule storage and ordering."""

    @pytest.mark.asyncio
    async def test_rules_in_creation_order(self, registry):
        fine_tune = await registry.create_fine_tune("weather", "llama-2-7b")
        for text in ["first", "second", "third"]:
            await registry.add_pruning_rule(fine_tune.id, text)

        assert await registry.get_pruning_rules(fine_tune.id) == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_rules_are_per_model(self, registry):
        a = await registry.create_fine_tune("a", "llama-2-7b")
        b = await registry.create_fine_tune("b", "llama-2-7b")
        await registry.add_pruning_rule(a.id, "only a")

        assert await registry.get_pruning_rules(b.id) == []

    @pytest.mark.asyncio
    async def test_rules_are_keyed_by_fine_tune_id(self, registry):
        fine_tune = await registry.create_fine_tune("weather", "llama-2-7b")
        await registry.add_pruning_rule(fine_tune.id, "boilerplate")

        assert await registry.get_pruning_rules(fine_tune.id) == ["boilerplate"]
        assert await registry.get_pruning_rules("weather") == []

    @pytest.mark.asyncio
    async def test_delete_rule(self, registry):
        fine_tune = await registry.create_fine_tune("weather", "llama-2-7b")
        rule = await registry.add_pruning_rule(fine_tune.id, "boilerplate")

        assert await registry.delete_pruning_rule(rule.id)
        assert not await registry.delete_pruning_rule(rule.id)
        assert await registry.list_pruning_rules(fine_tune.id) == []

    @pytest.mark.asyncio
    async def test_empty_rule_rejected(self, registry):
        fine_tune = await registry.create_fine_tune("weather", "llama-2-7b")

        with pytest.raises(ValueError):
            await registry.add_pruning_rule(fine_tune.id, "")
