from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage

from session_core.domain.context.prompt_context import BASE_PREAMBLE, build_system_preamble
from session_core.domain.models.session_context import (
    CapabilityUsage, CompanyFacts, Identity, MultimodalEntry, SessionContext
)
from session_core.infrastructure.llm.provider import (
    LangChainChatProvider, MockProvider, collect, to_langchain_messages
)


async def test_langchain_provider_streams_model_output():
    models = []

    def factory(model):
        models.append(model)
        return GenericFakeChatModel(messages=iter([AIMessage(content="hello there world")]))

    provider = LangChainChatProvider(factory)
    text, _ = await collect(provider, [HumanMessage(content="hi")], "system", "gemini-2.5-flash")

    assert text == "hello there world"
    assert models == ["gemini-2.5-flash"]


async def test_mock_provider_echoes_and_reports_usage():
    provider = MockProvider()

    text, usage = await provider.complete([HumanMessage(content="what do you do?")], "system", "m")

    assert text == "[mock:m] what do you do?"
    assert usage.output_tokens >= 1
    assert provider.calls[0]["model"] == "m"


def test_history_is_converted_in_order():
    messages = to_langchain_messages(
        [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        "next"
    )

    assert [type(m) for m in messages] == [HumanMessage, AIMessage, HumanMessage]
    assert messages[-1].content == "next"


def test_preamble_without_context_is_the_base_prompt():
    preamble = build_system_preamble(None, "chat")

    assert preamble.startswith(BASE_PREAMBLE)
    assert "Visitor" not in preamble


def test_preamble_includes_facts_and_recent_activity():
    context = SessionContext(
        session_key="s1",
        identity=Identity(name="Ada", email="ada@acme.io"),
        company_facts=CompanyFacts(name="Acme", industry="robotics"),
        capabilities_used=[CapabilityUsage(capability="search")],
        multimodal_history=[MultimodalEntry(kind="image", analysis="A warehouse floor plan")],
    )

    preamble = build_system_preamble(context, "research")

    assert "ada@acme.io" in preamble
    assert "robotics" in preamble
    assert "search" in preamble
    assert "warehouse floor plan" in preamble
