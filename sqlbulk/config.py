"""Configuration models for SQLBULK."""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from sqlbulk.utils.config_loader import load_yaml_with_env


class ColumnDirection(str, Enum):
    """
    How the identity column participates in a bulk insert.

    Values:
    * `none` - No identity handling. Only valid when no identity column is declared.
    * `output` - The store generates the value. The column is left out of the transfer
      and generated values are not read back.
    * `input_output` - The store generates the value and it is written back into each
      record. Forces the staging table path.
    """

    NONE = "none"
    OUTPUT = "output"
    INPUT_OUTPUT = "input_output"


class IdentityColumn(BaseModel):
    """Identity column declaration: the record field holding the key and its direction."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(min_length=1, description="Record field mapped to the identity column")
    direction: ColumnDirection = ColumnDirection.OUTPUT


class BulkCopySettings(BaseModel):
    """
    Options for the bulk transfer step.

    ```yaml
    bulk_copy:
      batch_size: 5000
      timeout: 600
      table_lock: true
      use_internal_transaction: true
    ```
    """

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(
        default=0,
        ge=0,
        description="Rows per batch. 0 sends all rows in a single batch.",
    )
    timeout: int = Field(
        default=600,
        ge=0,
        description="Per-statement timeout in seconds. 0 waits indefinitely.",
    )
    keep_identity: bool = Field(
        default=False,
        description="Preserve supplied identity values instead of letting the store generate them",
    )
    check_constraints: bool = Field(
        default=False,
        description="Validate FOREIGN KEY and CHECK constraints during the load",
    )
    table_lock: bool = Field(
        default=False, description="Take an exclusive table lock (TABLOCK) for the load"
    )
    use_internal_transaction: bool = Field(
        default=False,
        description="Commit each batch in its own transaction; a failed batch is rolled back",
    )


# --- SQL Server Auth ---


class SQLServerAuthMode(str, Enum):
    AAD_MSI = "aad_msi"
    SQL_LOGIN = "sql_login"
    CONNECTION_STRING = "connection_string"


class SQLLoginAuth(BaseModel):
    mode: Literal[SQLServerAuthMode.SQL_LOGIN] = SQLServerAuthMode.SQL_LOGIN
    username: str
    password: str


class SQLMsiAuth(BaseModel):
    mode: Literal[SQLServerAuthMode.AAD_MSI] = SQLServerAuthMode.AAD_MSI
    client_id: Optional[str] = None


class SQLConnectionStringAuth(BaseModel):
    mode: Literal[SQLServerAuthMode.CONNECTION_STRING] = SQLServerAuthMode.CONNECTION_STRING
    connection_string: str


SQLServerAuthConfig = Annotated[
    Union[SQLLoginAuth, SQLMsiAuth, SQLConnectionStringAuth],
    Field(discriminator="mode"),
]


class SQLServerConnectionConfig(BaseModel):
    """
    SQL Server connection.

    Scenario 1: Managed identity (AAD MSI)
    ```yaml
    connection:
      host: "server.database.windows.net"
      database: "dw"
      auth:
        mode: "aad_msi"
    ```

    Scenario 2: SQL login
    ```yaml
    connection:
      host: "localhost"
      database: "dw"
      auth:
        mode: "sql_login"
        username: "dw_writer"
        password: "${DW_PASSWORD}"
    ```
    """

    host: str
    database: str
    port: int = 1433
    driver: str = "ODBC Driver 18 for SQL Server"
    timeout: int = Field(default=30, ge=0, description="Login timeout in seconds")
    use_fmtonly: bool = Field(
        default=False,
        description=(
            "Add UseFMTONLY=Yes to the DSN. Works around drivers whose fast_executemany "
            "parameter discovery cannot see session temp tables such as #TmpTable"
        ),
    )
    auth: SQLServerAuthConfig = Field(
        default_factory=lambda: SQLMsiAuth(mode=SQLServerAuthMode.AAD_MSI)
    )


class BulkLoadConfig(BaseModel):
    """Top-level configuration file: where to connect and how to transfer."""

    connection: SQLServerConnectionConfig
    bulk_copy: BulkCopySettings = Field(default_factory=BulkCopySettings)
    schema_name: str = Field(default="dbo", alias="schema")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def check_schema_name(self):
        if not self.schema_name.strip():
            raise ValueError("BulkLoadConfig: 'schema' must not be empty")
        return self


def load_config(path: str, env: Optional[str] = None) -> BulkLoadConfig:
    """Load and validate a YAML configuration file."""
    return BulkLoadConfig.model_validate(load_yaml_with_env(path, env=env))
