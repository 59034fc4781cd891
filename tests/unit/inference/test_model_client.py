"""
Tests for ModelClient retry, backoff, deadline and circuit behavior.
"""

import asyncio
import random

import pytest

from recommender.inference.breaker import CircuitStatus
from recommender.inference.client import ModelClient
from recommender.inference.schemas import KNOWLEDGE_ENCODER, POLICY, EncoderResponse
from recommender.shared.config import InferenceConfig
from recommender.shared.exceptions import (
    CircuitBreakerOpenError,
    EndpointUnavailableError,
    InferenceTimeoutError,
    InvalidResponseError,
)


def _client(transport, clock, max_attempts=3):
    config = InferenceConfig(max_attempts=max_attempts)
    return ModelClient(transport, config, clock=clock, sleep=clock.sleep, rng=random.Random(42))


@pytest.mark.asyncio
async def test_returns_validated_model(make_transport, fake_clock):
    transport = make_transport({KNOWLEDGE_ENCODER: lambda p: {"embedding": [1.0, 2.0]}})
    client = _client(transport, fake_clock)

    result = await client.invoke(KNOWLEDGE_ENCODER, {"student_id": "s1"}, 1000, EncoderResponse)

    assert isinstance(result, EncoderResponse)
    assert result.embedding == [1.0, 2.0]
    assert transport.calls == [(KNOWLEDGE_ENCODER, {"student_id": "s1"})]


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(make_transport, fake_clock):
    """Two unavailable answers, then success on the third attempt."""
    answers = [
        EndpointUnavailableError("down", POLICY),
        EndpointUnavailableError("down", POLICY),
        {"candidates": []},
    ]

    def policy(payload):
        answer = answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    transport = make_transport({POLICY: policy})
    client = _client(transport, fake_clock)
    start = fake_clock.now

    result = await client.invoke(POLICY, {}, 60_000)

    assert result == {"candidates": []}
    assert len(transport.calls) == 3
    waited = fake_clock.now - start
    # 1s then 2s base backoff, each with up to 100% jitter
    assert 3.0 <= waited < 6.0
    assert client.breaker(POLICY).state.consecutive_failures == 0


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(make_transport, fake_clock):
    transport = make_transport({POLICY: EndpointUnavailableError("down", POLICY)})
    client = _client(transport, fake_clock)

    with pytest.raises(EndpointUnavailableError):
        await client.invoke(POLICY, {}, 60_000)

    assert len(transport.calls) == 3


@pytest.mark.asyncio
async def test_invalid_response_is_not_retried(make_transport, fake_clock):
    transport = make_transport({KNOWLEDGE_ENCODER: lambda p: {"vector": "nope"}})
    client = _client(transport, fake_clock)

    with pytest.raises(InvalidResponseError) as exc:
        await client.invoke(KNOWLEDGE_ENCODER, {}, 60_000, EncoderResponse)

    assert exc.value.endpoint == KNOWLEDGE_ENCODER
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_no_retry_when_backoff_exceeds_budget(make_transport, fake_clock):
    transport = make_transport({POLICY: EndpointUnavailableError("down", POLICY)})
    client = _client(transport, fake_clock)

    with pytest.raises(EndpointUnavailableError):
        await client.invoke(POLICY, {}, 500)

    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_slow_endpoint_times_out(make_transport):
    async def slow(payload):
        await asyncio.sleep(1.0)
        return {"embedding": []}

    transport = make_transport({KNOWLEDGE_ENCODER: slow})
    client = ModelClient(transport, InferenceConfig(), rng=random.Random(0))

    with pytest.raises(InferenceTimeoutError):
        await client.invoke(KNOWLEDGE_ENCODER, {}, 50)


def test_backoff_is_capped(make_transport, fake_clock):
    client = _client(make_transport(), fake_clock)

    for attempt, base in [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0), (6, 8.0)]:
        backoff = client.backoff_seconds(attempt)
        assert base <= backoff < 2 * base


@pytest.mark.asyncio
async def test_open_circuit_makes_no_transport_calls(make_transport, fake_clock):
    """After five failures the endpoint is not contacted until the cooldown ends."""
    transport = make_transport({POLICY: EndpointUnavailableError("down", POLICY)})
    client = _client(transport, fake_clock, max_attempts=1)

    for _ in range(5):
        with pytest.raises(EndpointUnavailableError):
            await client.invoke(POLICY, {}, 1000)
    assert client.breaker(POLICY).state.status == CircuitStatus.OPEN
    assert len(transport.calls) == 5

    for _ in range(10):
        fake_clock.advance(5.0)
        with pytest.raises(CircuitBreakerOpenError):
            await client.invoke(POLICY, {}, 1000)

    assert len(transport.calls) == 5


@pytest.mark.asyncio
async def test_one_trial_call_after_cooldown(make_transport, fake_clock):
    """Concurrent callers after the cooldown: one reaches the endpoint, the rest are rejected."""
    release = asyncio.Event()
    healthy = {"on": False}

    async def policy(payload):
        if not healthy["on"]:
            raise EndpointUnavailableError("down", POLICY)
        await release.wait()
        return {"candidates": []}

    transport = make_transport({POLICY: policy})
    client = _client(transport, fake_clock, max_attempts=1)

    for _ in range(5):
        with pytest.raises(EndpointUnavailableError):
            await client.invoke(POLICY, {}, 1000)

    fake_clock.advance(60.0)
    healthy["on"] = True

    trial = asyncio.create_task(client.invoke(POLICY, {}, 5000))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    others = await asyncio.gather(
        *(client.invoke(POLICY, {}, 1000) for _ in range(4)), return_exceptions=True
    )
    assert all(isinstance(e, CircuitBreakerOpenError) for e in others)
    assert len(transport.calls) == 6

    release.set()
    assert await trial == {"candidates": []}
    assert client.breaker(POLICY).state.status == CircuitStatus.CLOSED


@pytest.mark.asyncio
async def test_cancelled_trial_releases_slot(make_transport, fake_clock):
    hang = asyncio.Event()

    async def policy(payload):
        await hang.wait()
        return {"candidates": []}

    transport = make_transport({POLICY: policy})
    client = _client(transport, fake_clock, max_attempts=1)
    breaker = client.breaker(POLICY)
    for _ in range(5):
        trial = await breaker.acquire()
        await breaker.record_failure(trial)
    fake_clock.advance(60.0)

    task = asyncio.create_task(client.invoke(POLICY, {}, 5000))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await breaker.acquire() is True


def test_circuit_snapshot_lists_every_endpoint(make_transport, fake_clock):
    client = _client(make_transport(), fake_clock)

    snapshot = client.circuit_snapshot()

    assert set(snapshot) == {"knowledge_encoder", "personalization_adapter", "policy", "causal_estimator"}
    assert all(s.status == CircuitStatus.CLOSED for s in snapshot.values())


@pytest.mark.asyncio
async def test_unexpected_transport_error_becomes_invalid_response(make_transport, fake_clock):
    def broken(payload):
        raise RuntimeError("decoder bug")

    transport = make_transport({POLICY: broken})
    client = _client(transport, fake_clock)

    with pytest.raises(InvalidResponseError) as exc:
        await client.invoke(POLICY, {}, 60_000)

    assert isinstance(exc.value.__cause__, RuntimeError)
    assert len(transport.calls) == 1
    assert client.breaker(POLICY).state.consecutive_failures == 1
