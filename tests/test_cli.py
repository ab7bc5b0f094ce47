"""
CLI tests using typer's CliRunner against an on-disk library.

Every invocation passes --root so commands never touch the working directory.
"""

import json

import pytest
import yaml
from typer.testing import CliRunner

from pluqqy import cli
from pluqqy.cli import app

from conftest import write_file


runner = CliRunner()


@pytest.fixture
def invoke(library):
    """Run a command against the fixture library."""
    def _invoke(*args, input=None):
        return runner.invoke(app, ["--root", str(library.root), *args], input=input)
    return _invoke


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_library(self, tmp_path):
        result = runner.invoke(app, ["--root", str(tmp_path), "init"])
        assert result.exit_code == 0, result.output
        assert "Initialized pluqqy library" in result.output
        assert (tmp_path / ".pluqqy" / "components" / "prompts").is_dir()
        assert (tmp_path / ".pluqqy" / "pluqqy.toml").exists()
        assert (tmp_path / ".pluqqy" / ".gitignore").exists()

    def test_runs_twice(self, tmp_path):
        runner.invoke(app, ["--root", str(tmp_path), "init"])
        result = runner.invoke(app, ["--root", str(tmp_path), "init"])
        assert result.exit_code == 0

    @pytest.mark.parametrize("args", [["search", "tag:api"], ["list"], ["usage", "--all"]])
    def test_commands_need_library(self, tmp_path, args):
        result = runner.invoke(app, ["--root", str(tmp_path), *args])
        assert result.exit_code == 1
        assert "pluqqy init" in result.output

    def test_root_from_environment(self, library):
        result = runner.invoke(app, ["list"], env={"PLUQQY_ROOT": str(library.root)})
        assert result.exit_code == 0, result.output
        assert "PROMPTS (2)" in result.output


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------


class TestSearch:
    def test_text_groups(self, invoke):
        result = invoke("search", "tag:api AND type:component")
        assert result.exit_code == 0, result.output
        assert "Search Results for: tag:api AND type:component" in result.output
        assert "CONTEXTS (1)" in result.output
        assert "PROMPTS (2)" in result.output
        assert "PIPELINES" not in result.output
        assert "Total: 3 results" in result.output

    def test_words_are_joined(self, invoke):
        result = invoke("search", "tag:api", "NOT", "tag:security", "-o", "json")
        data = json.loads(result.stdout)
        assert data["query"] == "tag:api NOT tag:security"
        assert data["count"] == 3

    def test_json(self, invoke):
        result = invoke("search", "tag:api", "-o", "json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["count"] == 4
        assert [r["name"] for r in data["results"]] == [
            "API Prompt", "api-pipeline", "Authentication Prompt", "API Context",
        ]
        first = data["results"][0]
        assert first["type"] == "prompt"
        assert first["usage"] == 1
        assert first["highlights"] == {"tags": ["api"]}

    def test_yaml(self, invoke):
        result = invoke("search", "tag:auth OR tag:security", "-o", "yaml")
        data = yaml.safe_load(result.stdout)
        assert [r["name"] for r in data["results"]] == ["Authentication Prompt", "Security Rules"]

    def test_content_excerpt_shown(self, invoke):
        result = invoke("search", "content:error")
        assert "API Prompt" in result.output
        assert "└─" in result.output

    def test_limit(self, invoke):
        data = json.loads(invoke("search", "tag:api", "-n", "1", "-o", "json").stdout)
        assert data["count"] == 1

    def test_sort_by_name(self, invoke):
        data = json.loads(invoke("search", "tag:api", "--sort", "name", "-o", "json").stdout)
        assert data["results"][0]["name"] == "API Context"

    def test_no_results(self, invoke):
        result = invoke("search", "tag:nothing")
        assert result.exit_code == 0
        assert "No results found for query: tag:nothing" in result.output

    def test_invalid_query(self, invoke):
        result = invoke("search", "color:red")
        assert result.exit_code == 1
        assert "invalid query" in result.output
        assert "unknown field" in result.output

    @pytest.mark.parametrize("args", [["-o", "xml"], ["--sort", "random"]])
    def test_bad_options(self, invoke, args):
        assert invoke("search", "tag:api", *args).exit_code == 1

    def test_archived_only_when_asked(self, invoke):
        invoke("archive", "Security Rules")
        plain = json.loads(invoke("search", "tag:security", "-o", "json").stdout)
        assert [r["name"] for r in plain["results"]] == ["Authentication Prompt"]
        archived = json.loads(invoke("search", "status:archived", "-o", "json").stdout)
        assert [r["name"] for r in archived["results"]] == ["Security Rules"]
        assert archived["results"][0]["archived"] is True

    def test_max_results_setting(self, invoke, library):
        (library.path / "pluqqy.toml").write_text("[search]\nmax_results = 2\n")
        data = json.loads(invoke("search", "tag:api", "-o", "json").stdout)
        assert data["count"] == 2


# ---------------------------------------------------------------------------
# list / create / show
# ---------------------------------------------------------------------------


class TestList:
    def test_text(self, invoke):
        result = invoke("list")
        assert result.exit_code == 0, result.output
        for heading in ("PIPELINES (1)", "CONTEXTS (1)", "PROMPTS (2)", "RULES (1)"):
            assert heading in result.output
        assert "used by 1" in result.output

    def test_filter_json(self, invoke):
        rows = json.loads(invoke("list", "-t", "prompt", "-o", "json").stdout)
        assert [r["name"] for r in rows] == ["API Prompt", "Authentication Prompt"]

    def test_pipelines(self, invoke):
        rows = json.loads(invoke("list", "-t", "pipelines", "-o", "json").stdout)
        assert [r["path"] for r in rows] == ["pipelines/api-pipeline.yaml"]

    def test_archived(self, invoke):
        assert "No archived items." in invoke("list", "--archived").output
        invoke("archive", "security-rules")
        rows = json.loads(invoke("list", "--archived", "-o", "json").stdout)
        assert [r["name"] for r in rows] == ["Security Rules"]

    def test_unknown_type(self, invoke):
        assert invoke("list", "-t", "widget").exit_code == 1


class TestCreate:
    def test_create(self, invoke, library):
        result = invoke("create", "prompt", "Error Budget", "-t", "slo", "-t", "ops", "-c", "Spend it.")
        assert result.exit_code == 0, result.output
        assert "Created components/prompts/error-budget.md" in result.output
        c = library.read_component("components/prompts/error-budget.md")
        assert c.tags == ["slo", "ops"]
        assert c.content == "Spend it."

    def test_content_from_stdin(self, invoke, library):
        result = invoke("create", "context", "Notes", "-c", "-", input="From stdin\n")
        assert result.exit_code == 0, result.output
        assert library.read_component("components/contexts/notes.md").content == "From stdin\n"

    def test_duplicate(self, invoke):
        result = invoke("create", "prompt", "API Prompt")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_unknown_type(self, invoke):
        assert invoke("create", "widget", "X").exit_code == 1

    def test_writes_ops_log(self, invoke, library):
        invoke("create", "rule", "Be Brief")
        assert "Wrote component components/rules/be-brief.md" in (
            library.path / "pluqqy-ops.log"
        ).read_text()


class TestShow:
    def test_component(self, invoke):
        result = invoke("show", "API Prompt")
        assert result.exit_code == 0, result.output
        assert result.output.startswith("## PROMPTS\n\nExplain error handling")

    def test_pipeline(self, invoke):
        result = invoke("show", "api-pipeline")
        assert result.output.startswith("# api-pipeline\n\n## CONTEXT\n")

    def test_not_found(self, invoke):
        result = invoke("show", "nothing")
        assert result.exit_code == 1
        assert "not found" in result.output


# ---------------------------------------------------------------------------
# set / edit
# ---------------------------------------------------------------------------


class TestSet:
    def test_pipeline(self, invoke, library):
        result = invoke("set", "api-pipeline")
        assert result.exit_code == 0, result.output
        assert result.output.startswith("Set api-pipeline -> ")
        assert "tokens)" in result.output
        text = (library.root / "PLUQQY.md").read_text()
        assert text.startswith("# api-pipeline\n")
        assert "Return errors as JSON." in text

    def test_component(self, invoke, library):
        invoke("set", "security-rules")
        assert (library.root / "PLUQQY.md").read_text() == "## IMPORTANT RULES\n\nNever log secrets.\n"

    def test_output_file(self, invoke, library):
        result = invoke("set", "api-pipeline", "-f", "out/AGENTS.md")
        assert result.exit_code == 0, result.output
        assert (library.root / "out" / "AGENTS.md").exists()
        assert not (library.root / "PLUQQY.md").exists()

    def test_configured_filename(self, invoke, library):
        (library.path / "pluqqy.toml").write_text('[output]\ndefault_filename = "CLAUDE.md"\n')
        invoke("set", "api-pipeline")
        assert (library.root / "CLAUDE.md").exists()

    def test_empty_pipeline(self, invoke, library):
        (library.path / "pipelines" / "empty.yaml").write_text("name: empty\ncomponents: []\n")
        result = invoke("set", "empty")
        assert result.exit_code == 1
        assert "no components" in result.output


class TestEdit:
    def test_runs_editor(self, invoke, monkeypatch):
        monkeypatch.setenv("EDITOR", "true")
        assert invoke("edit", "api-prompt").exit_code == 0

    def test_editor_failure(self, invoke, monkeypatch):
        monkeypatch.setenv("EDITOR", "false")
        result = invoke("edit", "api-prompt")
        assert result.exit_code == 1
        assert "editor exited with status 1" in result.output

    def test_missing_editor(self, invoke, monkeypatch):
        monkeypatch.setenv("EDITOR", "no-such-editor-pluqqy")
        result = invoke("edit", "api-prompt")
        assert result.exit_code == 1
        assert "editor not found" in result.output


# ---------------------------------------------------------------------------
# archive / restore / delete / usage
# ---------------------------------------------------------------------------


class TestArchive:
    def test_archive_and_restore(self, invoke, library):
        result = invoke("archive", "Security Rules")
        assert result.exit_code == 0, result.output
        assert "Archived components/rules/security-rules.md -> archive/components/rules/security-rules.md" in result.output

        result = invoke("restore", "security-rules")
        assert result.exit_code == 0, result.output
        assert (library.path / "components/rules/security-rules.md").exists()

    def test_warns_about_users(self, invoke):
        result = invoke("archive", "api-prompt")
        assert result.exit_code == 0, result.output
        assert "still used by pipelines: api-pipeline" in result.output

    def test_archive_twice(self, invoke):
        invoke("archive", "security-rules")
        result = invoke("archive", "security-rules")
        assert result.exit_code == 1
        assert "already archived" in result.output

    def test_restore_active(self, invoke):
        result = invoke("restore", "security-rules")
        assert result.exit_code == 1
        assert "not archived" in result.output


class TestDelete:
    def test_force_removes_references(self, invoke, library):
        result = invoke("delete", "api-prompt", "--force")
        assert result.exit_code == 0, result.output
        assert "Deleted components/prompts/api-prompt.md" in result.output
        assert "Removed references from: api-pipeline" in result.output
        assert len(library.read_pipeline("pipelines/api-pipeline.yaml").components) == 1

    def test_confirm_declined(self, invoke, library):
        result = invoke("delete", "security-rules", input="n\n")
        assert result.exit_code == 1
        assert (library.path / "components/rules/security-rules.md").exists()

    def test_confirm_accepted(self, invoke, library):
        result = invoke("delete", "security-rules", input="y\n")
        assert result.exit_code == 0, result.output
        assert not (library.path / "components/rules/security-rules.md").exists()

    def test_archived_copy(self, invoke, library):
        write_file(library, "archive/components/rules/security-rules.md", "old\n")
        result = invoke("delete", "security-rules", "--archived", "--force")
        assert result.exit_code == 0, result.output
        assert "Deleted archive/components/rules/security-rules.md" in result.output
        assert (library.path / "components/rules/security-rules.md").exists()

    def test_archived_copy_missing(self, invoke):
        result = invoke("delete", "security-rules", "--archived", "--force")
        assert result.exit_code == 1
        assert "not archived" in result.output

    def test_prompt_mentions_users(self, invoke):
        result = invoke("delete", "api-context", input="n\n")
        assert "It is used by: api-pipeline" in result.output


class TestUsage:
    def test_component(self, invoke):
        result = invoke("usage", "api-prompt")
        assert result.exit_code == 0, result.output
        assert "components/prompts/api-prompt.md is used by:" in result.output
        assert "  api-pipeline" in result.output

    def test_unused(self, invoke):
        assert "is not used by any pipeline" in invoke("usage", "auth-prompt").output

    def test_archived_pipeline(self, invoke):
        invoke("archive", "api-pipeline")
        data = json.loads(invoke("usage", "api-prompt", "-o", "json").stdout)
        assert data == {
            "component": "components/prompts/api-prompt.md",
            "pipelines": [],
            "archived_pipelines": ["api-pipeline"],
        }

    def test_all(self, invoke):
        rows = json.loads(invoke("usage", "--all", "-o", "json").stdout)
        assert {r["path"]: r["uses"] for r in rows} == {
            "components/contexts/api-context.md": 1,
            "components/prompts/api-prompt.md": 1,
            "components/prompts/auth-prompt.md": 0,
            "components/rules/security-rules.md": 0,
        }

    def test_needs_argument(self, invoke):
        assert invoke("usage").exit_code == 1

    def test_pipeline_rejected(self, invoke):
        result = invoke("usage", "api-pipeline")
        assert result.exit_code == 1
        assert "is a pipeline" in result.output


# ---------------------------------------------------------------------------
# export / rename / tags
# ---------------------------------------------------------------------------


class TestExport:
    def test_pipeline_to_stdout(self, invoke):
        result = invoke("export", "api-pipeline")
        assert result.exit_code == 0, result.output
        assert result.stdout == (
            "# api-pipeline\n\n"
            "## CONTEXT\n\n"
            "The service exposes a REST interface.\n\n\n"
            "## PROMPTS\n\n"
            "Explain error handling for the API.\nReturn errors as JSON.\n\n\n"
        )

    def test_component_to_file(self, invoke, tmp_path):
        target = tmp_path / "out" / "prompt.md"
        result = invoke("export", "prompts/api-prompt.md", "--file", str(target))
        assert result.exit_code == 0, result.output
        assert target.read_text() == (
            "## PROMPTS\n\nExplain error handling for the API.\nReturn errors as JSON.\n"
        )
        assert f"Component 'API Prompt' exported to {target}" in result.output
        assert "tokens" in result.output

    def test_pipeline_yaml(self, invoke):
        result = invoke("export", "api-pipeline", "-o", "yaml")
        assert result.exit_code == 0, result.output
        assert yaml.safe_load(result.stdout) == {
            "name": "api-pipeline",
            "tags": ["api", "production"],
            "components": [
                {"type": "prompts", "path": "../components/prompts/api-prompt.md", "order": 2},
                {"type": "contexts", "path": "../components/contexts/api-context.md", "order": 1},
            ],
        }

    def test_component_json(self, invoke):
        result = invoke("export", "Security Rules", "-o", "json")
        assert json.loads(result.stdout) == {
            "name": "Security Rules",
            "type": "rules",
            "tags": ["security", "critical"],
            "content": "Never log secrets.\n",
        }

    def test_json_to_file(self, invoke, tmp_path):
        target = tmp_path / "pipeline.json"
        result = invoke("export", "api-pipeline", "-o", "json", "-f", str(target))
        assert result.exit_code == 0, result.output
        assert json.loads(target.read_text())["name"] == "api-pipeline"
        assert "(json)" in result.output

    def test_empty_pipeline(self, invoke, library):
        write_file(library, "pipelines/empty.yaml", "name: empty\ncomponents: []\n")
        result = invoke("export", "empty")
        assert result.exit_code == 1
        assert "no components" in result.output

    def test_not_found(self, invoke):
        result = invoke("export", "nothing")
        assert result.exit_code == 1
        assert "not found" in result.output


class TestRename:
    def test_component(self, invoke, library):
        result = invoke("rename", "api-prompt", "REST Prompt")
        assert result.exit_code == 0, result.output
        assert "Renamed components/prompts/api-prompt.md -> components/prompts/rest-prompt.md" in result.output
        assert "Updated references in: api-pipeline" in result.output
        assert (library.path / "components/prompts/rest-prompt.md").exists()

        shown = invoke("show", "api-pipeline")
        assert "Explain error handling" in shown.output
        assert "Missing Components" not in shown.output

    def test_pipeline(self, invoke, library):
        result = invoke("rename", "api-pipeline", "Release")
        assert result.exit_code == 0, result.output
        assert library.read_pipeline("pipelines/release.yaml").name == "Release"

    def test_conflict(self, invoke):
        result = invoke("rename", "auth-prompt", "API Prompt")
        assert result.exit_code == 1
        assert "already exists" in result.output


class TestTags:
    def test_json(self, invoke):
        result = invoke("tags", "-o", "json")
        assert result.exit_code == 0, result.output
        rows = json.loads(result.stdout)
        assert [r["tag"] for r in rows] == [
            "api", "auth", "critical", "documentation", "error-handling",
            "production", "security", "v2",
        ]
        assert rows[0] == {"tag": "api", "components": 3, "pipelines": 1, "total": 4}

    def test_text(self, invoke):
        result = invoke("tags")
        assert result.exit_code == 0, result.output
        assert "4  (3 components, 1 pipelines)" in result.output
        assert result.output.splitlines()[0].startswith("api ")

    def test_no_tags(self, tmp_path):
        runner.invoke(app, ["--root", str(tmp_path), "init"])
        result = runner.invoke(app, ["--root", str(tmp_path), "tags"])
        assert result.exit_code == 0, result.output
        assert "No tags in use." in result.output


# ---------------------------------------------------------------------------
# config / main
# ---------------------------------------------------------------------------


class TestConfig:
    def test_all(self, invoke):
        result = invoke("config")
        assert result.exit_code == 0, result.output
        assert "[search]" in result.output
        assert "max_results = 100" in result.output

    def test_key(self, invoke):
        assert invoke("config", "output.default_filename").output.strip() == "PLUQQY.md"

    def test_list_value(self, invoke):
        sections = json.loads(invoke("config", "output.formatting.sections").stdout)
        assert sections[0] == {"type": "contexts", "heading": "## CONTEXT"}

    def test_unknown_key(self, invoke):
        result = invoke("config", "output.nope")
        assert result.exit_code == 1
        assert "unknown setting" in result.output


def test_main_logs_unexpected_errors(library, monkeypatch, capsys):
    def boom():
        raise RuntimeError("boom")

    monkeypatch.setattr(cli, "app", boom)
    monkeypatch.setattr(cli, "_root_override", library.root)
    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 1
    assert "Error: boom" in capsys.readouterr().err
    assert "RuntimeError: boom" in (library.path / "pluqqy-errors.log").read_text()
