"""
Connection models shared by the config loader and the driver glue.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class ProductTypeEnum(str, Enum):
    """Supported database product types (postgres, mysql, sqlite)."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLITE = "sqlite"


DEFAULT_PORTS: dict[ProductTypeEnum, int] = {
    ProductTypeEnum.POSTGRES: 5432,
    ProductTypeEnum.MYSQL: 3306,
}


class ConnectionParams(BaseModel):
    """Everything needed to open one physical connection.

    For SQLite, ``database`` is the file path (or ``:memory:``) and the
    network fields are ignored.
    """

    model_config = ConfigDict(frozen=True)

    product_type: ProductTypeEnum = ProductTypeEnum.POSTGRES
    host: str | None = None
    port: int | None = None
    database: str
    username: str | None = None
    password: SecretStr = Field(default=SecretStr(""))
    connect_timeout: int = 10

    @property
    def effective_port(self) -> int | None:
        return self.port or DEFAULT_PORTS.get(self.product_type)

    def describe(self) -> str:
        """Loggable target without credentials."""
        if self.product_type == ProductTypeEnum.SQLITE:
            return f"sqlite:{self.database}"
        return f"{self.product_type.value}://{self.host}:{self.effective_port}/{self.database}"
