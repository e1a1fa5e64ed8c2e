"""Tests for parsing raw completion text."""

from recall_chat.services.parser import JSON_MODE, TEXT_MODE, ResponseParser

parser = ResponseParser()


def test_text_mode_returns_reply_verbatim() -> None:
    result = parser.parse("  Hello! How can I help you?\n", TEXT_MODE)
    assert result.reply == "Hello! How can I help you?"
    assert result.memories == []
    assert result.parse_error is None


def test_text_mode_ignores_json_looking_output() -> None:
    raw = '{"response": "hi", "memories": [{"content": "likes tea"}]}'
    result = parser.parse(raw, TEXT_MODE)
    assert result.reply == raw
    assert result.memories == []


def test_json_mode_falls_back_on_invalid_json() -> None:
    result = parser.parse("not json", JSON_MODE)
    assert result.reply == "not json"
    assert result.memories == []
    assert result.parse_error


def test_json_mode_minimal_object() -> None:
    result = parser.parse('{"response":"hi","memories":[]}', JSON_MODE)
    assert result.reply == "hi"
    assert result.memories == []
    assert result.parse_error is None


def test_json_mode_extracts_memories() -> None:
    raw = """{
        "response": "Nice to meet you, John!",
        "memories": [
            {"content": "Name is John", "category": "name", "importance": "HIGH", "type": "user"},
            {"content": "Loves pizza", "category": "preferences"}
        ]
    }"""
    result = parser.parse(raw, JSON_MODE)
    assert result.reply == "Nice to meet you, John!"
    assert [m.content for m in result.memories] == ["Name is John", "Loves pizza"]
    assert result.memories[0].importance == "high"
    assert result.memories[0].type == "user"
    assert result.memories[1].importance == "medium"
    assert result.memories[1].type is None


def test_json_mode_accepts_markdown_fence() -> None:
    raw = '```json\n{"response": "Sure thing", "memories": []}\n```'
    result = parser.parse(raw, JSON_MODE)
    assert result.reply == "Sure thing"
    assert result.parse_error is None


def test_json_mode_missing_response_falls_back() -> None:
    raw = '{"memories": [{"content": "likes tea"}]}'
    result = parser.parse(raw, JSON_MODE)
    assert result.reply == raw
    assert result.memories == []
    assert "response" in result.parse_error


def test_json_mode_non_object_falls_back() -> None:
    result = parser.parse('["a", "b"]', JSON_MODE)
    assert result.reply == '["a", "b"]'
    assert result.parse_error


def test_json_mode_skips_malformed_memory_entries() -> None:
    raw = '{"response": "ok", "memories": [{"content": ""}, 42, {"content": "Has a dog"}]}'
    result = parser.parse(raw, JSON_MODE)
    assert result.reply == "ok"
    assert [m.content for m in result.memories] == ["Has a dog"]
    assert "2" in result.parse_error


def test_reply_never_empty_for_non_empty_input() -> None:
    for raw in ["x", "   ", "{", '{"response": ""}', '{"response": 5}']:
        result = parser.parse(raw, JSON_MODE)
        assert result.reply


def test_parse_memories_payload() -> None:
    memories = parser.parse_memories(
        'Here you go: {"memories": [{"content": "Works at Acme", "category": "projects"}]}'
    )
    assert len(memories) == 1
    assert memories[0].category == "projects"


def test_parse_memories_garbage_returns_empty() -> None:
    assert parser.parse_memories("nothing to see") == []
    assert parser.parse_memories('{"memories": "nope"}') == []
