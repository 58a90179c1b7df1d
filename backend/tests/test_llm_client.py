"""Tests for the Model Gateway: wire calls, offline fallback, circuit, streaming."""

import httpx
import pytest

from conftest import ScriptedModel, chat_response, sse_body
from leaseguard.pipeline.llm_client import (
    NO_RESPONSE_TEXT,
    GatewaySettings,
    ModelGateway,
    OfflineFallback,
    parse_stream_line,
)
from leaseguard.pipeline.prompts import ComposedPrompt


def _rule_answer(catalogue, keyword: str) -> str:
    for rule in catalogue.fallback_answers["rules"]:
        if keyword in rule["keywords"]:
            return rule["answer"]
    raise KeyError(keyword)


# ═══════════════════════════════════════════════════
# Offline fallback rubric
# ═══════════════════════════════════════════════════

class TestOfflineFallback:

    def test_first_matching_rule_wins(self, catalogue):
        fb = OfflineFallback.from_catalogue(catalogue)
        # "deposit" rule precedes the "damage" rule
        assert fb.answer("Can they keep my deposit for damage?") == _rule_answer(catalogue, "deposit")

    def test_keyword_match_is_case_insensitive(self, catalogue):
        fb = OfflineFallback.from_catalogue(catalogue)
        assert fb.answer("What NOTICE period applies?") == _rule_answer(catalogue, "notice")

    def test_default_and_empty(self, catalogue):
        fb = OfflineFallback.from_catalogue(catalogue)
        assert fb.answer("Is the balcony included?") == catalogue.fallback_answers["default"]
        assert fb.answer("   ") == catalogue.fallback_answers["empty"]


# ═══════════════════════════════════════════════════
# generate / generate_result
# ═══════════════════════════════════════════════════

class TestGenerate:

    @pytest.mark.asyncio
    async def test_no_credential_answers_locally_without_a_call(self, make_gateway, catalogue):
        model = ScriptedModel()
        gateway = make_gateway(model, api_key="")
        text = await gateway.generate("My landlord wants to keep the whole deposit. Is that allowed?")
        assert text == (
            "Based on Swiss rental law, deposits are typically limited to 3 months rent for residential "
            "properties. For vehicles, a deductible is standard practice. Any deductions must be "
            "justified and documented."
        )
        assert text == _rule_answer(catalogue, "deposit")
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_no_credential_result_is_flagged(self, make_gateway):
        gateway = make_gateway(ScriptedModel(), api_key="")
        result = await gateway.generate_result("anything about repair")
        assert result.used_fallback
        assert result.error_type == "auth"
        # Missing credential does not open the circuit
        assert not gateway.fallback.is_open

    @pytest.mark.asyncio
    async def test_success_returns_content_and_sends_openai_body(self, make_gateway):
        model = ScriptedModel("Normal wear is not chargeable.")
        gateway = make_gateway(model)
        result = await gateway.generate_result("Is a worn floor chargeable?", system_prompt="Be brief.",
                                               temperature=0.2, max_tokens=300, task_label="QA")
        assert result.text == "Normal wear is not chargeable."
        assert not result.used_fallback
        assert result.usage["total_tokens"] == 42
        body = model.calls[0]
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 300
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert body["messages"][1] == {"role": "user", "content": "Is a worn floor chargeable?"}

    @pytest.mark.asyncio
    async def test_empty_choices_yield_placeholder_text(self, make_gateway):
        model = ScriptedModel(httpx.Response(200, json={"choices": []}))
        gateway = make_gateway(model)
        assert await gateway.generate("hello") == NO_RESPONSE_TEXT

    @pytest.mark.asyncio
    async def test_rejected_credential_falls_back_without_retry(self, make_gateway, catalogue):
        model = ScriptedModel(401)
        gateway = make_gateway(model)
        result = await gateway.generate_result("Who pays for the scratch on the counter?")
        assert result.used_fallback
        assert result.error_type == "auth"
        assert result.text == _rule_answer(catalogue, "scratch")
        assert len(model.calls) == 1
        assert gateway.fallback.failures[-1]["error_type"] == "auth"

    @pytest.mark.asyncio
    async def test_server_error_opens_circuit(self, make_gateway):
        model = ScriptedModel(503)
        gateway = make_gateway(model)
        first = await gateway.generate_result("first")
        assert first.error_type == "network"
        assert gateway.fallback.is_open

        # Circuit open: answered locally, the script would fail on a second call
        second = await gateway.generate_result("second")
        assert second.used_fallback
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_falls_back(self, make_gateway):
        model = ScriptedModel(httpx.ConnectError("connection refused"))
        gateway = make_gateway(model)
        result = await gateway.generate_result("terminate early?")
        assert result.used_fallback
        assert result.error_type == "network"

    @pytest.mark.asyncio
    async def test_circuit_closes_after_cooldown(self, make_gateway):
        now = [1000.0]
        model = ScriptedModel(500, "back online")
        gateway = make_gateway(model, clock=lambda: now[0])
        await gateway.generate("first")
        assert gateway.fallback.is_open
        now[0] += 31
        assert not gateway.fallback.is_open
        assert await gateway.generate("second") == "back online"
        assert len(model.calls) == 2

    @pytest.mark.asyncio
    async def test_progress_callbacks(self, make_gateway):
        events = []

        async def cb(stage, message, details):
            events.append(details["type"])

        gateway = make_gateway(ScriptedModel("ok"))
        await gateway.generate("hi", task_label="Ping", on_progress=cb)
        assert events == ["llm_start", "llm_done"]

        offline = make_gateway(ScriptedModel(), api_key="")
        events.clear()
        await offline.generate("hi", on_progress=cb)
        assert events == ["llm_fallback"]


# ═══════════════════════════════════════════════════
# Vision messages
# ═══════════════════════════════════════════════════

class TestVisionMessages:

    def test_labels_precede_each_image(self):
        messages = ModelGateway.build_messages(
            "Compare", image_refs=["https://a/1.jpg", "https://a/2.jpg"],
            image_labels=["--- BEFORE Photo 1 ---", "--- AFTER Photo 1 ---"],
        )
        content = messages[-1]["content"]
        assert [b["type"] for b in content] == ["text", "text", "image_url", "text", "image_url"]
        assert content[1]["text"] == "--- BEFORE Photo 1 ---"
        assert content[2]["image_url"]["url"] == "https://a/1.jpg"

    @pytest.mark.asyncio
    async def test_images_use_vision_model(self, catalogue):
        model = ScriptedModel("{}")
        settings = GatewaySettings(api_key="k", base_url="https://llm.test/v1",
                                   model="text-model", vision_model="vision-model")
        gateway = ModelGateway(settings, transport=httpx.MockTransport(model))
        prompt = ComposedPrompt("Comparison", "", "Compare", image_refs=("https://a/1.jpg",),
                                image_labels=("--- BEFORE Photo 1 ---",), temperature=0.3)
        await gateway.complete(prompt)
        assert model.calls[0]["model"] == "vision-model"
        assert model.calls[0]["temperature"] == 0.3


# ═══════════════════════════════════════════════════
# Streaming
# ═══════════════════════════════════════════════════

class TestStreaming:

    def test_parse_stream_line(self):
        assert parse_stream_line('data: {"choices": [{"delta": {"content": "Hi"}}]}') == (False, "Hi")
        assert parse_stream_line('data: {"text": "plain"}') == (False, "plain")
        assert parse_stream_line("data: [DONE]") == (True, "")
        assert parse_stream_line(": keep-alive") == (False, "")
        assert parse_stream_line("data: {not json") == (False, "")

    @pytest.mark.asyncio
    async def test_deltas_until_done(self, make_gateway):
        model = ScriptedModel(httpx.Response(200, content=sse_body(["Art. 267 ", "CO protects ", "you."])))
        gateway = make_gateway(model)
        parts = [d async for d in gateway.stream("explain", task_label="Q")]
        assert parts == ["Art. 267 ", "CO protects ", "you."]
        assert model.calls[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_failure_before_output_yields_fallback(self, make_gateway, catalogue):
        gateway = make_gateway(ScriptedModel(502))
        parts = [d async for d in gateway.stream("What is the notice period?")]
        assert parts == [_rule_answer(catalogue, "notice")]

    @pytest.mark.asyncio
    async def test_generate_streamed_joins(self, make_gateway):
        gateway = make_gateway(ScriptedModel(httpx.Response(200, content=sse_body(["a", "b"]))))
        assert await gateway.generate_streamed("x") == "ab"


class TestStatus:

    @pytest.mark.asyncio
    async def test_unconfigured(self, make_gateway):
        status = await make_gateway(ScriptedModel(), api_key="").check_status()
        assert status["status"] == "unconfigured"

    @pytest.mark.asyncio
    async def test_online(self, make_gateway):
        gateway = make_gateway(ScriptedModel(chat_response("")))
        status = await gateway.check_status()
        assert status["status"] == "online"
