import asyncio

import pytest

from errors import TransientProviderError
from image_acceptance import LIP_POSITION, ImageAcceptanceValidator, parse_binary_answer
from models import InferenceImage, InferenceMode
from prompts import default_registry
from settings import ProviderRoute

from fakes import ScriptedClient, sleeper, text_result

ROUTE = ProviderRoute("anthropic", "judge")
CANDIDATE = InferenceImage(data=b"png-simulation", media_type="image/png")


def _validator(script, **kwargs):
    client = ScriptedClient("anthropic", {"judge": script}) if script is not None else None
    return client, ImageAcceptanceValidator(client, ROUTE, default_registry(), **kwargs)


@pytest.mark.parametrize(
    "answer,expected",
    [
        ("YES", True),
        ("yes.", True),
        ("Sim", True),
        ("NO", False),
        ("não", False),
        ("NAO!", False),
        ("", None),
        ("maybe", None),
        ("No, the lips moved", None),
    ],
)
def test_parse_binary_answer(answer, expected):
    assert parse_binary_answer(answer) is expected


def test_unchanged_lips_are_accepted(photo):
    client, validator = _validator([text_result("anthropic", "judge", "NÃO")])
    verdict = asyncio.run(validator.check(photo, CANDIDATE, LIP_POSITION))

    assert verdict.accepted is True
    request = client.requests[0]
    assert request.images == (photo, CANDIDATE)
    assert request.mode == InferenceMode.TEXT
    assert request.max_tokens == 10


def test_moved_lips_are_rejected(photo):
    _, validator = _validator([text_result("anthropic", "judge", "YES")])
    verdict = asyncio.run(validator.check(photo, CANDIDATE))
    assert verdict.accepted is False
    assert verdict.reason == "invariant violated"


def test_timeout_rejects_the_candidate(photo):
    _, validator = _validator([sleeper(5)], timeout_seconds=0.05)
    verdict = asyncio.run(validator.check(photo, CANDIDATE))
    assert verdict.accepted is False
    assert "timed out" in verdict.reason


def test_provider_failure_rejects_the_candidate(photo):
    error = TransientProviderError("overloaded", retryable=True, http_status=529, provider="anthropic")
    _, validator = _validator([error])
    assert asyncio.run(validator.check(photo, CANDIDATE)).accepted is False


def test_malformed_answer_rejects_the_candidate(photo):
    _, validator = _validator([text_result("anthropic", "judge", "I think they look similar")])
    verdict = asyncio.run(validator.check(photo, CANDIDATE))
    assert verdict.accepted is False
    assert verdict.reason == "malformed answer"


def test_missing_client_unknown_invariant_or_no_time_reject(photo):
    _, without_client = _validator(None)
    assert asyncio.run(without_client.check(photo, CANDIDATE)).accepted is False

    client, validator = _validator([text_result("anthropic", "judge", "NO")])
    assert asyncio.run(validator.check(photo, CANDIDATE, "tooth_count")).accepted is False
    assert asyncio.run(validator.check(photo, CANDIDATE, timeout_seconds=0)).accepted is False
    assert client.requests == []
