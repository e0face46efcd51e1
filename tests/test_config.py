"""Tests for configuration module."""

import json
from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from db_feed.config import (
    RecordMode,
    Settings,
    SourceType,
    load_settings,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Test default settings creation."""
        settings = Settings()
        assert settings.db_name == "db"
        assert settings.source.type == SourceType.SQLITE
        assert settings.source.min_value == -1
        assert settings.record.mode == RecordMode.AUTO
        assert settings.traversal.batch_hint == 100
        assert settings.traversal.checksum_algorithm == "sha1"
        assert settings.limits.max_document_size == 30 * 1024 * 1024

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test settings loading from environment variables."""
        monkeypatch.setenv("DB_FEED_DB_NAME", "inventory")
        monkeypatch.setenv("DB_FEED_TRAVERSAL__BATCH_HINT", "50")
        monkeypatch.setenv("DB_FEED_RECORD__PRIMARY_KEYS", '["id", "rev"]')

        settings = Settings()
        assert settings.db_name == "inventory"
        assert settings.traversal.batch_hint == 50
        assert settings.record.primary_keys == ["id", "rev"]

    def test_primary_keys_from_comma_string(self) -> None:
        """Test comma-separated key columns are split."""
        settings = Settings.model_validate({"record": {"primary_keys": "id, rev ,"}})
        assert settings.record.primary_keys == ["id", "rev"]

    def test_blank_columns_become_none(self) -> None:
        """Test blank column names read as unset."""
        settings = Settings.model_validate({"record": {"title_column": "  "}})
        assert settings.record.title_column is None

    def test_batch_hint_must_be_positive(self) -> None:
        """Test batch_hint lower bound."""
        with pytest.raises(ValidationError):
            Settings.model_validate({"traversal": {"batch_hint": 0}})

    def test_mime_types_normalized(self) -> None:
        """Test MIME type lists are split and lower-cased."""
        settings = Settings.model_validate(
            {"limits": {"supported_mime_types": "Text/Plain, application/pdf"}}
        )
        assert settings.limits.supported_mime_types == {"text/plain", "application/pdf"}


class TestRecordModeValidation:
    """Explicit record modes need their columns."""

    def test_complete_url_requires_column(self) -> None:
        with pytest.raises(ValidationError, match="document_url_column"):
            Settings.model_validate({"record": {"mode": "complete_url"}})

    def test_base_url_requires_both(self) -> None:
        with pytest.raises(ValidationError, match="base_url"):
            Settings.model_validate(
                {"record": {"mode": "base_url", "document_id_column": "doc"}}
            )

    def test_lob_mode_with_column(self) -> None:
        settings = Settings.model_validate({"record": {"mode": "lob", "lob_column": "body"}})
        assert settings.record.mode == RecordMode.LOB

    def test_auto_mode_needs_nothing(self) -> None:
        settings = Settings.model_validate({"record": {"mode": "auto"}})
        assert settings.record.mode == RecordMode.AUTO


class TestValidateSource:
    """Test Settings.validate_source()."""

    def test_missing_values(self) -> None:
        """Test validation with nothing configured."""
        errors = Settings().validate_source()
        assert any("primary_keys" in e for e in errors)
        assert any("query" in e for e in errors)
        assert any("sqlite_path" in e for e in errors)

    def test_complete(self, make_settings) -> None:
        """Test validation with all values."""
        assert make_settings().validate_source() == []

    def test_incremental_query_is_enough(self, make_settings) -> None:
        settings = make_settings(
            source={"query": "", "incremental_query": "SELECT * FROM users WHERE id > :value"}
        )
        assert settings.source.parameterized
        assert settings.validate_source() == []

    def test_d1_credentials(self) -> None:
        """Test D1 credential validation."""
        settings = Settings.model_validate({
            "record": {"primary_keys": ["id"]},
            "source": {"type": "d1", "query": "SELECT * FROM t"},
        })
        errors = settings.validate_source()
        assert any("api_token" in e for e in errors)
        assert any("account_id" in e for e in errors)

        settings.source.d1.api_token = SecretStr("token")
        settings.source.d1.account_id = "account"
        settings.source.d1.database_id = "db-uuid"
        assert settings.validate_source() == []


class TestConfigFiles:
    """Test loading and saving config files."""

    def test_to_file_json_redacts_token(self, tmp_path: Path) -> None:
        """Test saving settings to JSON file."""
        settings = Settings.model_validate({
            "db_name": "inventory",
            "source": {"type": "d1", "d1": {"account_id": "acct", "api_token": "secret"}},
        })
        output_path = tmp_path / "config.json"
        settings.to_file(output_path)

        data = json.loads(output_path.read_text())
        assert data["db_name"] == "inventory"
        assert data["source"]["d1"]["account_id"] == "acct"
        assert data["source"]["d1"]["api_token"] == "***REDACTED***"
        assert "secret" not in output_path.read_text()

    def test_toml_round_trip(self, tmp_path: Path) -> None:
        """Test saving to TOML and loading it back."""
        settings = Settings.model_validate({
            "db_name": "inventory",
            "source": {"sqlite_path": "inventory.db", "query": "SELECT * FROM items"},
            "record": {"primary_keys": ["id", "rev"], "exclude_columns": ["notes"]},
            "traversal": {"batch_hint": 25},
        })
        path = tmp_path / "config.toml"
        settings.to_file(path)

        loaded = Settings.from_file(path)
        assert loaded.db_name == "inventory"
        assert loaded.source.sqlite_path == Path("inventory.db")
        assert loaded.record.primary_keys == ["id", "rev"]
        assert loaded.record.exclude_columns == ["notes"]
        assert loaded.traversal.batch_hint == 25

    def test_from_file_missing(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            Settings.from_file(tmp_path / "nope.toml")

    def test_from_file_unsupported_format(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("db_name: x\n")
        with pytest.raises(ValueError, match="Unsupported"):
            Settings.from_file(path)

    def test_load_settings_overrides(self, tmp_path: Path) -> None:
        """Test overrides take precedence over the file."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"db_name": "from-file", "hostname": "files.example"}))

        settings = load_settings(path, db_name="override")
        assert settings.db_name == "override"
        assert settings.hostname == "files.example"

    def test_stylesheet_file(self, tmp_path: Path) -> None:
        """Test a stylesheet file wins over the inline stylesheet."""
        template = tmp_path / "row.j2"
        template.write_text("<p>{{ title }}</p>")
        settings = Settings.model_validate(
            {"record": {"stylesheet": "", "stylesheet_file": str(template)}}
        )
        assert settings.record.resolved_stylesheet() == "<p>{{ title }}</p>"

    def test_inline_stylesheet(self) -> None:
        assert Settings().record.resolved_stylesheet() is None
        settings = Settings.model_validate({"record": {"stylesheet": ""}})
        assert settings.record.resolved_stylesheet() == ""
