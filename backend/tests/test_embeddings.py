"""Tests for embedding model selection and the embedding client."""

import asyncio

import pytest

from christy.core.config import Settings
from christy.knowledge.embeddings import (
    PROBE_TEXT,
    TASK_RETRIEVAL_QUERY,
    EmbeddingClient,
    SelectionState,
)
from christy.knowledge.errors import (
    ConfigurationError,
    InvalidResponse,
    ProviderError,
    ProviderRateLimited,
    ProviderTransient,
    ProviderUnavailable,
)
from christy.knowledge.providers import (
    _as_vector,
    classify_provider_error,
    create_embedding_provider,
)

from tests.fakes import DIMENSION, FakeClock, FakeEmbeddingProvider


class TestModelSelection:
    """Candidate probing and the selection state machine."""

    @pytest.mark.asyncio
    async def test_commits_to_first_working_candidate(self, make_client):
        provider = FakeEmbeddingProvider(
            model_errors={"fake-embedding-a": ProviderError("not found", status_code=404)}
        )
        client = make_client(provider)

        assert client.selection.state == SelectionState.UNPROBED
        model = await client.select_model()

        assert model == "fake-embedding-b"
        assert client.selection.state == SelectionState.COMMITTED
        assert client.selection.tried == ["fake-embedding-a", "fake-embedding-b"]
        assert provider.models_called() == ["fake-embedding-a", "fake-embedding-b"]

    @pytest.mark.asyncio
    async def test_probes_only_once(self, make_client):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        await client.embed("first")
        await client.embed("second")

        assert provider.calls_for(PROBE_TEXT) == 1
        assert client.model == "fake-embedding-a"

    @pytest.mark.asyncio
    async def test_override_is_probed_alone(self, make_client):
        provider = FakeEmbeddingProvider(
            model_errors={"custom-model": ProviderError("not found", status_code=404)}
        )
        client = make_client(provider, model_override="custom-model")

        with pytest.raises(ProviderError):
            await client.select_model()

        assert provider.models_called() == ["custom-model"]
        assert client.selection.state == SelectionState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_override_commits_without_candidates(self, make_client):
        provider = FakeEmbeddingProvider()
        client = make_client(provider, model_override="  custom-model  ")

        assert await client.select_model() == "custom-model"
        assert provider.models_called() == ["custom-model"]

    @pytest.mark.asyncio
    async def test_all_candidates_rejected_is_exhausted(self, make_client):
        rejected = ProviderError("not found", status_code=404)
        provider = FakeEmbeddingProvider(
            model_errors={"fake-embedding-a": rejected, "fake-embedding-b": rejected}
        )
        client = make_client(provider)

        with pytest.raises(ProviderUnavailable):
            await client.select_model()
        assert client.selection.state == SelectionState.EXHAUSTED

        # Exhausted selection fails fast without calling the provider again
        calls_before = len(provider.calls)
        with pytest.raises(ProviderUnavailable):
            await client.embed("hello")
        assert len(provider.calls) == calls_before

    @pytest.mark.asyncio
    async def test_transient_exhaustion_cools_down(self, make_client, recording_sleep):
        clock = FakeClock()
        provider = FakeEmbeddingProvider(always_fail=ProviderTransient("down", status_code=503))
        client = make_client(provider, max_retries=1, probe_cooldown_seconds=60, clock=clock)

        with pytest.raises(ProviderUnavailable):
            await client.select_model()

        assert client.selection.state == SelectionState.UNPROBED
        assert recording_sleep.delays == [2, 2]
        calls_after_probe = len(provider.calls)

        # Provider recovered, but the cool-down has not passed yet
        provider.always_fail = None
        with pytest.raises(ProviderUnavailable):
            await client.embed("hello")
        assert len(provider.calls) == calls_after_probe
        assert recording_sleep.delays == [2, 2]

        clock.advance(61)
        assert await client.select_model() == "fake-embedding-a"

    @pytest.mark.asyncio
    async def test_reset_ends_cool_down(self, make_client):
        provider = FakeEmbeddingProvider(always_fail=ProviderTransient("down", status_code=503))
        client = make_client(provider, max_retries=0, clock=FakeClock())

        with pytest.raises(ProviderUnavailable):
            await client.select_model()

        provider.always_fail = None
        client.reset()
        assert await client.select_model() == "fake-embedding-a"

    @pytest.mark.asyncio
    async def test_override_transient_failure_cools_down(self, make_client):
        provider = FakeEmbeddingProvider(always_fail=ProviderTransient("down", status_code=503))
        client = make_client(provider, model_override="custom-model", max_retries=0, clock=FakeClock())

        with pytest.raises(ProviderUnavailable):
            await client.select_model()
        calls_after_probe = len(provider.calls)

        with pytest.raises(ProviderUnavailable):
            await client.select_model()
        assert len(provider.calls) == calls_after_probe
        assert client.selection.tried == ["custom-model"]

    @pytest.mark.asyncio
    async def test_reset_forgets_committed_model(self, make_client):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        await client.select_model()
        client.reset()

        assert client.selection.state == SelectionState.UNPROBED
        assert client.model is None
        await client.select_model()
        assert provider.calls_for(PROBE_TEXT) == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_probe(self, make_client):
        provider = FakeEmbeddingProvider(delay=0.01)
        client = make_client(provider)

        models = await asyncio.gather(*(client.select_model() for _ in range(5)))

        assert set(models) == {"fake-embedding-a"}
        assert provider.calls_for(PROBE_TEXT) == 1


class TestEmbed:
    @pytest.mark.asyncio
    async def test_undersized_vector_is_invalid(self, make_client):
        provider = FakeEmbeddingProvider(vectors={"short": [0.1, 0.2, 0.3]})
        client = make_client(provider)

        with pytest.raises(InvalidResponse):
            await client.embed("short")

    @pytest.mark.asyncio
    async def test_non_numeric_vector_is_invalid(self, make_client):
        provider = FakeEmbeddingProvider(vectors={"bad": [None] * DIMENSION})
        client = make_client(provider)

        with pytest.raises(InvalidResponse):
            await client.embed("bad")

    @pytest.mark.asyncio
    async def test_non_finite_vector_is_invalid(self, make_client):
        provider = FakeEmbeddingProvider(vectors={"nan": [float("nan")] * DIMENSION})
        client = make_client(provider)

        with pytest.raises(InvalidResponse):
            await client.embed("nan")

    @pytest.mark.asyncio
    async def test_undersized_probe_skips_candidate(self, make_client):
        provider = FakeEmbeddingProvider(dimension=4)
        client = make_client(provider)

        with pytest.raises(ProviderUnavailable):
            await client.select_model()
        assert client.selection.state == SelectionState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_passes_task_type(self, make_client):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)

        vector = await client.embed("hello", TASK_RETRIEVAL_QUERY)

        assert len(vector) == DIMENSION
        assert provider.calls[-1] == ("fake-embedding-a", "hello", TASK_RETRIEVAL_QUERY)

    @pytest.mark.asyncio
    async def test_rate_limit_retried_with_hint(self, make_client, recording_sleep):
        provider = FakeEmbeddingProvider()
        client = make_client(provider)
        await client.select_model()

        provider.failures = [ProviderRateLimited("quota", status_code=429, retry_after=30)]
        vector = await client.embed("hello")

        assert len(vector) == DIMENSION
        assert recording_sleep.delays == [31]

    def test_from_settings(self):
        settings = Settings(
            embedding_provider="openai",
            embedding_model=None,
            embed_max_retries=2,
            _env_file=None,
        )
        client = EmbeddingClient.from_settings(FakeEmbeddingProvider(), settings)

        assert client.candidates[0] == "text-embedding-3-small"
        assert client.max_retries == 2
        assert client.model_override is None


class TestProviderFactory:
    def test_missing_credential_is_configuration_error(self):
        settings = Settings(embedding_provider="google", gemini_api_key=None, _env_file=None)

        with pytest.raises(ConfigurationError):
            create_embedding_provider(settings)

    def test_unknown_provider(self):
        settings = Settings(embedding_provider="cohere", _env_file=None)

        with pytest.raises(ConfigurationError):
            create_embedding_provider(settings)

    def test_none_disables_embeddings(self):
        settings = Settings(embedding_provider="none", _env_file=None)

        assert create_embedding_provider(settings) is None
        assert settings.embedding_enabled is False

    def test_status_classification(self):
        assert isinstance(classify_provider_error(429, "quota"), ProviderRateLimited)
        assert isinstance(classify_provider_error(503, "down"), ProviderTransient)
        assert isinstance(classify_provider_error(500, "oops"), ProviderTransient)

        rejected = classify_provider_error(404, "missing")
        assert type(rejected) is ProviderError
        assert rejected.status_code == 404

    def test_response_vector_conversion(self):
        assert _as_vector(["0.5", 1]) == [0.5, 1.0]
        assert _as_vector(None) == []

        with pytest.raises(InvalidResponse):
            _as_vector([None] * 768)
        with pytest.raises(InvalidResponse):
            _as_vector(["high", "low"])
