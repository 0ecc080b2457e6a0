"""Tests for turn/content models and JSON value helpers."""

from colloquy.conversation.json_values import estimate_json_tokens, simplify_json
from colloquy.conversation.models import (
    DocumentBlock,
    ImageBlock,
    ReasoningBlock,
    TextBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    Turn,
    assistant_turn,
    user_turn,
)


class TestTurn:
    def test_text_concatenates_text_blocks_in_order(self):
        turn = Turn(
            role="assistant",
            content=[
                TextBlock(text="Hello, "),
                ReasoningBlock(text="thinking", signature="sig"),
                TextBlock(text="world"),
            ],
        )
        assert turn.text() == "Hello, world"

    def test_content_is_a_tuple_and_order_preserved(self):
        blocks = [TextBlock(text="a"), ToolInvocationBlock(id="t1", name="echo", input={"x": 1})]
        turn = Turn(role="assistant", content=blocks)
        assert isinstance(turn.content, tuple)
        assert [b.type for b in turn.content] == ["text", "tool_invocation"]

    def test_value_equality(self):
        assert user_turn("hi") == user_turn("hi")
        assert user_turn("hi") != assistant_turn("hi")

    def test_tool_helpers(self):
        assistant = Turn(
            role="assistant",
            content=[
                TextBlock(text="Working"),
                ToolInvocationBlock(id="t1", name="echo"),
                ToolInvocationBlock(id="t2", name="echo"),
            ],
        )
        user = Turn(role="user", content=[ToolResultBlock(id="t1", result="ok")])
        assert assistant.invocation_ids == ["t1", "t2"]
        assert user.result_ids == ["t1"]
        assert assistant.has_tool_blocks and user.has_tool_blocks
        assert not user_turn("plain").has_tool_blocks

    def test_empty(self):
        assert Turn(role="user").is_empty
        assert not user_turn("").is_empty


class TestSerialization:
    def test_json_round_trip_with_binary_payloads(self):
        turn = Turn(
            role="user",
            content=[
                ImageBlock(format="png", data=b"\x89PNG\x00\x01"),
                DocumentBlock(format="pdf", data=b"%PDF-1.7", name="report.pdf"),
                TextBlock(text="What is in these?"),
            ],
        )
        restored = Turn.model_validate_json(turn.model_dump_json())
        assert restored == turn

    def test_binary_serializes_as_base64(self):
        turn = Turn(role="user", content=[ImageBlock(format="png", data=b"abc")])
        assert '"YWJj"' in turn.model_dump_json()

    def test_discriminator_selects_block_type(self):
        turn = Turn.model_validate({
            "role": "user",
            "content": [{"type": "tool_result", "id": "t1", "result": "boom", "status": "error"}],
        })
        block = turn.content[0]
        assert isinstance(block, ToolResultBlock)
        assert block.status == "error"


class TestJsonValues:
    def test_estimate_scalars(self):
        assert estimate_json_tokens(None) == 1
        assert estimate_json_tokens(True) == 1
        assert estimate_json_tokens(42) == 1
        assert estimate_json_tokens("") == 1
        assert estimate_json_tokens("x" * 40) == 10

    def test_estimate_containers(self):
        assert estimate_json_tokens([]) == 10
        assert estimate_json_tokens([1, 2]) == 12
        # 10 overhead + len("name")//4 + len("abcdefgh")//4
        assert estimate_json_tokens({"name": "abcdefgh"}) == 10 + 1 + 2

    def test_simplify_truncates_long_strings(self):
        simplified = simplify_json("y" * 250)
        assert simplified == "y" * 200 + "..."
        assert simplify_json("short") == "short"

    def test_simplify_caps_arrays_and_objects_recursively(self):
        value = {f"k{i}": list(range(10)) for i in range(8)}
        simplified = simplify_json(value)
        assert list(simplified) == ["k0", "k1", "k2", "k3", "k4"]
        assert simplified["k0"] == [0, 1, 2, 3, 4]

    def test_simplify_leaves_scalars(self):
        assert simplify_json(3.5) == 3.5
        assert simplify_json(None) is None
