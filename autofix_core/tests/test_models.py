import pytest

from autofix_core.domain.models import (
    BackendKind,
    NormalizedResponse,
    ResponseFragment,
    StopReason,
    TokenUsage,
    ToolInvocationRequest,
    assemble_fragments,
    build_response,
)


def test_token_usage_total_is_derived():
    usage = TokenUsage(input_tokens=7, output_tokens=5, total_tokens=999)
    assert usage.total_tokens == 12
    combined = usage + TokenUsage(input_tokens=1, output_tokens=2, estimated=True)
    assert combined.total_tokens == 15
    assert combined.estimated is True


def test_normalized_response_requires_exactly_one_payload():
    usage = TokenUsage.zero()
    with pytest.raises(ValueError):
        NormalizedResponse(text=None, invocations=(), stop_reason=StopReason.NATURAL_STOP, usage=usage)
    call = ToolInvocationRequest(id="a", name="code_editor")
    with pytest.raises(ValueError):
        NormalizedResponse(text="hi", invocations=(call,), stop_reason=StopReason.TOOL_USE, usage=usage)


def test_duplicate_invocation_ids_rejected():
    call = ToolInvocationRequest(id="a", name="code_editor")
    with pytest.raises(ValueError):
        NormalizedResponse(text=None, invocations=(call, call), stop_reason=StopReason.TOOL_USE, usage=TokenUsage.zero())


def test_build_response_prefers_invocations_and_fills_empty_text():
    call = ToolInvocationRequest(id="a", name="directory_inspector", arguments={"operation": "list", "path": "."})
    res = build_response("let me look", [call], StopReason.NATURAL_STOP, TokenUsage.zero())
    assert res.stop_reason is StopReason.TOOL_USE
    assert res.text is None
    assert res.requests_tools

    empty = build_response("  ", [], StopReason.MAX_TOKENS, TokenUsage.zero())
    assert empty.text == "[empty response: max_tokens]"
    assert empty.stop_reason is StopReason.MAX_TOKENS


def test_assemble_fragments_without_stop_reason_fails_closed():
    res = assemble_fragments([ResponseFragment(text_delta="hel"), ResponseFragment(text_delta="lo")])
    assert res.text == "hello"
    assert res.stop_reason is StopReason.ERROR
    assert res.usage.estimated is True


def test_assemble_fragments_collects_invocations_and_usage():
    call = ToolInvocationRequest(id="t1", name="test_runner", arguments={"operation": "test"})
    res = assemble_fragments(
        [
            ResponseFragment(invocation=call),
            ResponseFragment(stop_reason=StopReason.TOOL_USE, usage=TokenUsage(input_tokens=3, output_tokens=4)),
        ]
    )
    assert res.invocations == (call,)
    assert res.usage.total_tokens == 7


def test_backend_kind_parse():
    assert BackendKind.parse(" Claude ") is BackendKind.CLAUDE
    with pytest.raises(ValueError):
        BackendKind.parse("gemini")
