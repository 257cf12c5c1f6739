"""
End-to-end tests for the rtb command line, using mock providers.
"""

import json

import pytest
from typer.testing import CliRunner

from rtb.cli import app, apply_api_keys
from rtb.config import ProviderConfig, StoreConfig


runner = CliRunner()

MOCK_CONFIG = """\
[embedding]
name = "mock"

[completion]
name = "mock"

[embeddings]
backoff_base = 0.0
"""

FAILING_CONFIG = """\
[embedding]
name = "mock"
fail_after = 0

[completion]
name = "mock"

[embeddings]
max_attempts = 2
backoff_base = 0.0
"""


@pytest.fixture
def cli(tmp_path, registered_mocks):
    """Invoke rtb against a temp database and a mock-provider config."""
    config_path = tmp_path / "rtb.toml"
    config_path.write_text(MOCK_CONFIG)
    db_path = tmp_path / "rtb.db"

    def invoke(*args):
        return runner.invoke(app, ["--db", str(db_path), "--config", str(config_path), *args])

    invoke.config_path = config_path
    return invoke


@pytest.fixture
def imported(cli, sample_export_file):
    result = cli("import", str(sample_export_file))
    assert result.exit_code == 0, result.output
    return cli


class TestImport:

    def test_import_reports_counts(self, cli, sample_export_file):
        result = cli("import", str(sample_export_file))

        assert result.exit_code == 0, result.output
        assert "Pages: 2 (2 new, 0 updated)" in result.output
        assert "Items: 5 (5 new, 0 updated, 0 unchanged)" in result.output
        assert "Marked for embedding: 5" in result.output

    def test_reimport_is_idempotent(self, imported, sample_export_file):
        result = imported("import", str(sample_export_file))

        assert result.exit_code == 0, result.output
        assert "Items: 5 (0 new, 0 updated, 5 unchanged)" in result.output
        assert "Marked for embedding: 0" in result.output

    def test_malformed_export(self, cli, tmp_path, sample_export_data):
        sample_export_data[1]["children"][0]["children"][0]["uid"] = "s1"
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps(sample_export_data))

        result = cli("import", str(bad))

        assert result.exit_code == 1
        assert "'s1'" in result.output
        assert "1 pages were committed before the error." in result.output

    def test_missing_export_file(self, cli, tmp_path):
        result = cli("import", str(tmp_path / "nope.json"))
        assert result.exit_code != 0


class TestEmbeddings:

    def test_update_embeddings(self, imported):
        result = imported("update-embeddings")
        assert result.exit_code == 0, result.output
        assert "5 updated" in result.output

        again = imported("update-embeddings")
        assert again.exit_code == 0
        assert "0 updated" in again.output

    def test_aborted_run_exits_2(self, imported):
        imported.config_path.write_text(FAILING_CONFIG)

        result = imported("update-embeddings")

        assert result.exit_code == 2
        assert "Aborted after retries: 0 updated" in result.output


class TestSearchAndAnswer:

    @pytest.fixture
    def embedded(self, imported):
        assert imported("update-embeddings").exit_code == 0
        return imported

    def test_search_to_file(self, embedded, tmp_path):
        out = tmp_path / "results.md"
        result = embedded("search", "Avoid screens before bed", "-k", "3", "-o", str(out))

        assert result.exit_code == 0, result.output
        text = out.read_text()
        assert text.startswith("Query: `Avoid screens before bed`\n")
        assert "((s2))" in text
        assert text.index("[[Sleep]]") < text.index("`1.000` Avoid screens before bed")

    def test_search_to_stdout(self, embedded):
        result = embedded("search", "Run three times a week", "-k", "1")
        assert result.exit_code == 0, result.output
        assert "**[[Exercise]]**" in result.output
        assert "((e1))" in result.output

    def test_answer(self, embedded):
        result = embedded("answer", "How long should I sleep?")

        assert result.exit_code == 0, result.output
        assert "Query: `How long should I sleep?` #GPT" in result.output
        assert "According to your notes" in result.output
        assert "Sources:" in result.output

    def test_answer_without_embeddings(self, imported):
        result = imported("answer", "How long should I sleep?")
        assert result.exit_code == 0, result.output
        assert "No context available" in result.output

    def test_empty_query(self, embedded):
        result = embedded("search", "  ")
        assert result.exit_code == 1


class TestDelete:

    def test_delete_page_removes_its_blocks_from_search(self, imported):
        assert imported("update-embeddings").exit_code == 0

        result = imported("delete-page", "Sleep")
        assert result.exit_code == 0, result.output
        assert "Deleted page: Sleep" in result.output

        search = imported("search", "Avoid screens before bed", "-k", "10")
        assert search.exit_code == 0, search.output
        for uid in ("s1", "s2", "s3"):
            assert f"(({uid}))" not in search.output
        assert "((e1))" in search.output

    def test_delete_missing_page(self, imported):
        result = imported("delete-page", "No Such Page")
        assert result.exit_code == 1
        assert "Not found" in result.output

    def test_delete_item(self, imported):
        result = imported("delete-item", "s1")
        assert result.exit_code == 0, result.output

        stats = imported("stats")
        assert "Items: 3" in stats.output


class TestStats:

    def test_stats(self, imported):
        assert imported("update-embeddings").exit_code == 0
        result = imported("stats")

        assert result.exit_code == 0, result.output
        assert "Pages: 2" in result.output
        assert "Items: 5" in result.output
        assert "Embedded: 5" in result.output
        assert "Pending: 0" in result.output
        assert "mock/mock-model/16" in result.output


class TestApiKeys:

    def test_keys_go_to_matching_providers(self, tmp_path):
        config = StoreConfig(
            path=tmp_path / "rtb.toml",
            embedding=ProviderConfig("openai", {"model": "text-embedding-3-small"}),
            completion=ProviderConfig("anthropic"),
        )

        apply_api_keys(config, openai_api_key="sk-openai", anthropic_api_key="sk-ant")

        assert config.embedding.params == {"model": "text-embedding-3-small", "api_key": "sk-openai"}
        assert config.completion.params == {"api_key": "sk-ant"}

    def test_other_providers_are_untouched(self, tmp_path):
        config = StoreConfig(
            path=tmp_path / "rtb.toml",
            embedding=ProviderConfig("ollama"),
            completion=ProviderConfig("mock"),
        )

        apply_api_keys(config, openai_api_key="sk-openai", anthropic_api_key="sk-ant")

        assert config.embedding.params == {}
        assert config.completion.params == {}

    def test_answer_accepts_anthropic_key(self, imported):
        result = imported("answer", "How long should I sleep?", "--anthropic-api-key", "sk-ant")
        assert result.exit_code == 0, result.output
