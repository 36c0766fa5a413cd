import asyncio
from types import SimpleNamespace

import pytest
from conftest import FakeClassifier

from pulse.config import Settings
from pulse.errors import UpstreamError, ValidationError
from pulse.services.classifier import OpenAIClassifier, call_with_retry, extract_json_object


def test_extract_json_from_prose_and_fences():
    text = 'Sure! ```json\n{"label": "NEGATIVE", "score": -0.4}\n``` hope it helps'

    assert extract_json_object(text) == {"label": "NEGATIVE", "score": -0.4}


def test_extract_json_rejects_non_objects():
    with pytest.raises(ValidationError):
        extract_json_object("[1, 2, 3]")
    with pytest.raises(ValidationError):
        extract_json_object("")


def test_retry_backs_off_linearly_then_succeeds():
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    classifier = FakeClassifier(UpstreamError("429"), UpstreamError("timeout"), '{"ok": true}')

    reply = asyncio.run(call_with_retry(classifier, "prompt", attempts=3, backoff_seconds=2.0, sleep=fake_sleep))

    assert reply == '{"ok": true}'
    assert waits == [2.0, 4.0]


def test_retry_exhaustion_returns_none():
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    classifier = FakeClassifier()

    assert asyncio.run(call_with_retry(classifier, "prompt", attempts=3, sleep=fake_sleep)) is None
    assert classifier.calls == 3
    assert waits == [2.0, 4.0]


class _Completions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(content):
    completions = _Completions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_openai_classifier_sends_bounded_prompt():
    config = Settings(_env_file=None, CLASSIFIER_MODEL="gpt-4o-mini", CLASSIFIER_MAX_TOKENS=500)
    client, completions = _client('  {"label": "POSITIVE"}  ')

    reply = asyncio.run(OpenAIClassifier(config, client=client).complete("hello"))

    assert reply == '{"label": "POSITIVE"}'
    assert completions.kwargs["model"] == "gpt-4o-mini"
    assert completions.kwargs["max_tokens"] == 500
    assert completions.kwargs["messages"][-1] == {"role": "user", "content": "hello"}


def test_openai_classifier_empty_completion_is_an_upstream_error():
    client, _ = _client("")

    with pytest.raises(UpstreamError):
        asyncio.run(OpenAIClassifier(Settings(_env_file=None), client=client).complete("hello"))


def test_openai_classifier_without_key_is_an_upstream_error():
    config = Settings(_env_file=None, OPENAI_API_KEY="")

    with pytest.raises(UpstreamError):
        asyncio.run(OpenAIClassifier(config).complete("hello"))
