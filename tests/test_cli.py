"""
End-to-end CLI tests against a temporary store with the noop provider.
"""

import json
from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

from mindclone import __version__
from mindclone.cli import app
from tests.conftest import MockInferenceProvider

runner = CliRunner()


@pytest.fixture
def store_dir(clean_env):
    return clean_env


def invoke(store_dir, *args, input=None):
    return runner.invoke(app, ["--store", str(store_dir), *args], input=input)


def add(store_dir, *args) -> dict:
    result = invoke(store_dir, "--json", "add", *args)
    assert result.exit_code == 0, result.output
    [memory] = json.loads(result.stdout)
    return memory


class TestGlobalOptions:

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "Usage" in result.output

    def test_config_created_on_first_use(self, store_dir):
        result = invoke(store_dir, "list")
        assert result.exit_code == 0
        assert "No memories." in result.output
        assert (store_dir / "mindclone.toml").exists()
        assert (store_dir / "memories.db").exists()


class TestCapture:

    def test_add_with_tags(self, store_dir):
        memory = add(store_dir, "Buy milk", "-t", "Shopping,food", "-t", "home")
        assert memory["content"] == "Buy milk"
        assert memory["type"] == "text"
        assert memory["tags"] == ["shopping", "food", "home"]
        assert memory["id"].startswith("mem_")

    def test_add_without_tags_uses_noop_suggestions(self, store_dir):
        memory = add(store_dir, "Call mom")
        assert memory["tags"] == []

    def test_add_link(self, store_dir):
        memory = add(store_dir, "--type", "link", "https://example.com", "-t", "read")
        assert memory["type"] == "link"

    def test_add_from_stdin(self, store_dir):
        result = invoke(store_dir, "--json", "add", "-", "-t", "note", input="From a pipe\n")
        assert result.exit_code == 0
        assert json.loads(result.stdout)[0]["content"] == "From a pipe\n"

    def test_empty_content_rejected(self, store_dir):
        result = invoke(store_dir, "add", "   ")
        assert result.exit_code == 1
        assert "Content cannot be empty" in result.output

    def test_image_needs_a_describing_model(self, store_dir, tmp_path):
        image = tmp_path / "photo.png"
        image.write_bytes(b"\x89PNG\r\n\x1a\n")
        result = invoke(store_dir, "add", "--image", str(image))
        assert result.exit_code == 1
        assert "could not describe image" in result.output

    def test_non_image_file_rejected(self, store_dir, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("hello")
        result = invoke(store_dir, "add", "--image", str(notes))
        assert result.exit_code == 1


class TestBrowse:

    def test_list_filters(self, store_dir):
        add(store_dir, "Buy milk", "-t", "shopping")
        add(store_dir, "https://example.com/milk", "-T", "link", "-t", "read")
        add(store_dir, "Call mom", "-t", "family")

        result = invoke(store_dir, "--json", "list", "-q", "milk")
        assert [m["content"] for m in json.loads(result.stdout)] == [
            "https://example.com/milk", "Buy milk",
        ]
        result = invoke(store_dir, "--json", "list", "-q", "milk", "-T", "text")
        assert [m["content"] for m in json.loads(result.stdout)] == ["Buy milk"]
        result = invoke(store_dir, "--json", "list", "-t", "family")
        assert [m["content"] for m in json.loads(result.stdout)] == ["Call mom"]
        result = invoke(store_dir, "--json", "list", "-n", "1")
        assert len(json.loads(result.stdout)) == 1

    def test_get(self, store_dir):
        memory = add(store_dir, "Buy milk", "-t", "shopping")
        result = invoke(store_dir, "get", memory["id"])
        assert result.exit_code == 0
        assert f"id: {memory['id']}" in result.output
        assert "tags: shopping" in result.output
        assert "Buy milk" in result.output

    def test_get_missing(self, store_dir):
        result = invoke(store_dir, "get", "mem_404")
        assert result.exit_code == 1
        assert "Not found" in result.output

    def test_tags_and_canvas(self, store_dir):
        add(store_dir, "a", "-t", "work")
        add(store_dir, "b", "-t", "work,urgent")
        add(store_dir, "c")
        result = invoke(store_dir, "--json", "tags")
        assert json.loads(result.stdout) == {"urgent": 1, "work": 2}

        result = invoke(store_dir, "--json", "canvas")
        groups = json.loads(result.stdout)
        assert [g["label"] for g in groups] == ["work", "Untagged"]
        assert len(groups[0]["memories"]) == 2

    def test_timeline_today(self, store_dir):
        add(store_dir, "fresh", "-t", "x")
        result = invoke(store_dir, "timeline")
        assert result.exit_code == 0
        assert result.output.startswith("Today (1)")

    def test_graph_empty_edges(self, store_dir):
        memory = add(store_dir, "lonely", "-t", "x")
        result = invoke(store_dir, "--json", "graph")
        graph = json.loads(result.stdout)
        assert graph["nodes"] == [{"id": memory["id"], "label": "lonely", "type": "text"}]
        assert graph["edges"] == []


class TestEdit:

    def test_tag_untag_and_delete(self, store_dir):
        a = add(store_dir, "a", "-t", "x")
        b = add(store_dir, "b", "-t", "x")

        result = invoke(store_dir, "tag", a["id"], b["id"], "-t", "Urgent")
        assert result.exit_code == 0
        assert "Tagged 2 memories with urgent" in result.output

        result = invoke(store_dir, "untag", a["id"], "urgent")
        assert result.exit_code == 0
        result = invoke(store_dir, "untag", a["id"], "urgent")
        assert result.exit_code == 1

        result = invoke(store_dir, "del", a["id"], "mem_404")
        assert result.exit_code == 1
        assert "Deleted 1 memory" in result.output
        assert "Not found: mem_404" in result.output

        result = invoke(store_dir, "--json", "list")
        assert [m["id"] for m in json.loads(result.stdout)] == [b["id"]]

    def test_tag_requires_tags(self, store_dir):
        result = invoke(store_dir, "tag", "mem_1")
        assert result.exit_code == 1


class TestAiCommands:

    def test_ask_without_memories(self, store_dir):
        result = invoke(store_dir, "ask", "What did I save?")
        assert result.exit_code == 0
        assert "don't have any memories" in result.output

    def test_ask_with_noop_model_reports_error(self, store_dir):
        add(store_dir, "Buy milk", "-t", "shopping")
        result = invoke(store_dir, "--json", "ask", "What should I buy?")
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["text"].startswith("Sorry, I encountered an error")
        assert payload["memories"] == []

    def test_ask_interactive_reads_until_blank_line(self, store_dir):
        result = invoke(store_dir, "ask", "-i", input="What did I save?\nAnything else?\n\nignored\n")
        assert result.exit_code == 0
        assert result.output.count("don't have any memories") == 2

    def test_ask_needs_question_or_interactive(self, store_dir):
        result = invoke(store_dir, "ask")
        assert result.exit_code == 1
        assert "--interactive" in result.output

    def test_chat_interactive_keeps_one_session(self, store_dir):
        memory = add(store_dir, "Buy milk", "-t", "shopping")
        result = invoke(store_dir, "chat", memory["id"], "First?", "-i", input="Second?\n")
        assert result.exit_code == 0
        assert result.output.count("Sorry") == 2

    def test_chat_interactive_passes_history(self, store_dir, monkeypatch):
        memory = add(store_dir, "Buy milk", "-t", "shopping")
        provider = MockInferenceProvider(default="Milk is on the list.")
        registry = SimpleNamespace(create_inference=lambda name, params: provider)
        monkeypatch.setattr("mindclone.cli.get_registry", lambda: registry)

        result = invoke(store_dir, "chat", memory["id"], "What do I need?", "-i", input="Anything else?\n")
        assert result.exit_code == 0, result.output
        assert len(provider.calls) == 2
        first = provider.calls[0]["prompt"].split("CONTEXT:")[0]
        second = provider.calls[1]["prompt"].split("CONTEXT:")[0]
        assert "What do I need?" not in first
        assert "What do I need?" in second
        assert "Milk is on the list." in second

    def test_insights_defaults(self, store_dir):
        add(store_dir, "one", "-t", "x")
        result = invoke(store_dir, "--json", "insights")
        assert len(json.loads(result.stdout)) == 3

    def test_summarize_failure(self, store_dir):
        memory = add(store_dir, "Buy milk", "-t", "shopping")
        result = invoke(store_dir, "summarize", memory["id"])
        assert result.exit_code == 1
        assert "failed to generate summary" in result.output

    def test_action_failure_message(self, store_dir):
        memory = add(store_dir, "Hello", "-t", "x")
        result = invoke(store_dir, "action", memory["id"], "translate", "--language", "French")
        assert result.exit_code == 0
        assert "failed to perform the action" in result.output


class TestData:

    def test_export_import_merge(self, store_dir, tmp_path):
        add(store_dir, "Buy milk", "-t", "shopping")
        add(store_dir, "Call mom", "-t", "family")
        out = tmp_path / "backup.json"
        result = invoke(store_dir, "data", "export", str(out))
        assert result.exit_code == 0
        data = json.loads(out.read_text())
        assert data["format"] == "mindclone-export"
        assert len(data["memories"]) == 2

        other = tmp_path / "other-store"
        result = invoke(other, "data", "import", str(out))
        assert result.exit_code == 0
        assert "Imported 2 memories" in result.output
        result = invoke(other, "--json", "list")
        assert {m["content"] for m in json.loads(result.stdout)} == {"Buy milk", "Call mom"}

    def test_export_to_stdout(self, store_dir):
        add(store_dir, "Buy milk", "-t", "shopping")
        result = invoke(store_dir, "data", "export", "-")
        assert json.loads(result.stdout)["memories"][0]["content"] == "Buy milk"

    def test_replace_needs_confirmation(self, store_dir, tmp_path):
        add(store_dir, "keep me", "-t", "x")
        backup = tmp_path / "empty.json"
        backup.write_text(json.dumps({"memories": []}))

        result = invoke(store_dir, "data", "import", str(backup), "--mode", "replace", input="n\n")
        assert result.exit_code == 0
        assert len(json.loads(invoke(store_dir, "--json", "list").stdout)) == 1

        result = invoke(store_dir, "data", "import", str(backup), "--mode", "replace", "--yes")
        assert result.exit_code == 0
        assert json.loads(invoke(store_dir, "--json", "list").stdout) == []

    def test_bad_mode(self, store_dir, tmp_path):
        backup = tmp_path / "b.json"
        backup.write_text("{}")
        result = invoke(store_dir, "data", "import", str(backup), "--mode", "append")
        assert result.exit_code == 1
