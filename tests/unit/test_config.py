"""Tests for configuration models and YAML loading."""

import pytest
from pydantic import ValidationError

from sqlbulk.config import (
    BulkCopySettings,
    BulkLoadConfig,
    ColumnDirection,
    IdentityColumn,
    SQLLoginAuth,
    SQLMsiAuth,
    load_config,
)
from sqlbulk.utils.config_loader import load_yaml_with_env


class TestBulkCopySettings:
    def test_defaults(self):
        s = BulkCopySettings()
        assert s.batch_size == 0
        assert s.timeout == 600
        assert s.keep_identity is False
        assert s.check_constraints is False
        assert s.table_lock is False
        assert s.use_internal_transaction is False

    def test_negative_batch_size(self):
        with pytest.raises(ValidationError):
            BulkCopySettings(batch_size=-5)

    def test_frozen(self):
        s = BulkCopySettings()
        with pytest.raises(ValidationError):
            s.batch_size = 10


class TestIdentityColumn:
    def test_default_direction(self):
        assert IdentityColumn(field="id").direction == ColumnDirection.OUTPUT

    def test_empty_field(self):
        with pytest.raises(ValidationError):
            IdentityColumn(field="")

    def test_direction_from_string(self):
        assert IdentityColumn(field="id", direction="input_output").direction == (
            ColumnDirection.INPUT_OUTPUT
        )


class TestBulkLoadConfig:
    def test_defaults(self):
        config = BulkLoadConfig(connection={"host": "localhost", "database": "dw"})
        assert config.schema_name == "dbo"
        assert isinstance(config.connection.auth, SQLMsiAuth)
        assert config.bulk_copy == BulkCopySettings()

    def test_schema_alias(self):
        config = BulkLoadConfig.model_validate(
            {"connection": {"host": "h", "database": "d"}, "schema": "sales"}
        )
        assert config.schema_name == "sales"

    def test_blank_schema(self):
        with pytest.raises(ValidationError):
            BulkLoadConfig(connection={"host": "h", "database": "d"}, schema_name=" ")

    def test_auth_discriminator(self):
        config = BulkLoadConfig(
            connection={
                "host": "h",
                "database": "d",
                "auth": {"mode": "sql_login", "username": "u", "password": "p"},
            }
        )
        assert isinstance(config.connection.auth, SQLLoginAuth)


class TestLoadConfig:
    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DW_PASSWORD", "s3cret-value")
        path = tmp_path / "bulk.yaml"
        path.write_text(
            "connection:\n"
            "  host: localhost\n"
            "  database: dw\n"
            "  auth:\n"
            "    mode: sql_login\n"
            "    username: writer\n"
            "    password: ${DW_PASSWORD}\n"
            "bulk_copy:\n"
            "  batch_size: 5000\n"
            "  table_lock: true\n"
        )

        config = load_config(str(path))

        assert config.connection.auth.password == "s3cret-value"
        assert config.bulk_copy.batch_size == 5000
        assert config.bulk_copy.table_lock is True

    def test_missing_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SQLBULK_MISSING", raising=False)
        path = tmp_path / "bulk.yaml"
        path.write_text("connection:\n  host: ${SQLBULK_MISSING}\n  database: dw\n")

        with pytest.raises(ValueError, match="SQLBULK_MISSING"):
            load_config(str(path))

    def test_environment_overrides(self, tmp_path):
        path = tmp_path / "bulk.yaml"
        path.write_text(
            "connection:\n"
            "  host: localhost\n"
            "  database: dw\n"
            "environments:\n"
            "  prod:\n"
            "    connection:\n"
            "      host: prod.database.windows.net\n"
            "    bulk_copy:\n"
            "      use_internal_transaction: true\n"
        )

        dev = load_config(str(path))
        prod = load_config(str(path), env="prod")

        assert dev.connection.host == "localhost"
        assert prod.connection.host == "prod.database.windows.net"
        assert prod.connection.database == "dw"
        assert prod.bulk_copy.use_internal_transaction is True

    def test_imports(self, tmp_path):
        (tmp_path / "base.yaml").write_text(
            "connection:\n  host: base-host\n  database: base-db\nbulk_copy:\n  timeout: 30\n"
        )
        path = tmp_path / "bulk.yaml"
        path.write_text("imports:\n  - base.yaml\nconnection:\n  database: dw\n")

        data = load_yaml_with_env(str(path))

        assert data == {
            "connection": {"host": "base-host", "database": "dw"},
            "bulk_copy": {"timeout": 30},
        }

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))
