"""
Configuration.

Every component reads its settings from environment variables (one
prefix per section) or a ``.env`` file; ``get_settings`` caches the
assembled result for the process.
"""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import BeforeValidator, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _lowercase(value: object) -> object:
    return value.lower() if isinstance(value, str) else value


# Accepts "OpenAI", "LOCAL", "File" ...
CaseInsensitive = BeforeValidator(_lowercase)


class Neo4jSettings(BaseSettings):
    """Graph database the corrected statements are written to."""

    model_config = SettingsConfigDict(env_prefix="NEO4J_")

    uri: str = Field(default="bolt://localhost:7687", description="Bolt or neo4j:// URI of the server")
    database: str = Field(default="neo4j", description="Target database")
    username: str = Field(default="neo4j", description="Login user")
    password: SecretStr = Field(default=SecretStr("password"), description="Login password")
    max_connection_pool_size: int = Field(default=50, description="Driver connection pool limit")
    connection_timeout_seconds: float = Field(
        default=30.0, description="Timeout for establishing a connection"
    )
    transaction_timeout_seconds: float = Field(
        default=120.0, description="Server-side timeout for a single write transaction"
    )


class LLMSettings(BaseSettings):
    """Text-generation provider used for schema extraction, statements and queries."""

    model_config = SettingsConfigDict(env_prefix="LLM_")

    provider: Annotated[Literal["openai", "anthropic", "azure", "local"], CaseInsensitive] = Field(
        default="local", description="Which backend answers prompts"
    )

    # Hosted providers
    openai_api_key: SecretStr | None = Field(default=None, description="Key for api.openai.com")
    cypher_model: str = Field(default="gpt-4o-mini", description="OpenAI model, or Azure fallback deployment")
    anthropic_api_key: SecretStr | None = Field(default=None, description="Key for the Anthropic API")
    anthropic_model: str = Field(default="claude-3-5-sonnet-20241022", description="Claude model")
    azure_openai_endpoint: str | None = Field(default=None, description="https://<resource>.openai.azure.com")
    azure_openai_deployment: str | None = Field(default=None, description="Deployment serving the model")
    azure_openai_api_key: SecretStr | None = Field(default=None, description="Key for the Azure resource")
    azure_openai_api_version: str = Field(default="2024-02-01", description="Azure REST API version")

    # Ollama
    local_llm_base_url: str = Field(default="http://localhost:11434", description="Ollama server")
    local_llm_model: str = Field(default="llama3.2", description="Model tag; must be pulled beforehand")

    temperature: float = Field(default=0.1, description="Sampling temperature")
    max_tokens: int = Field(default=4096, description="Default max tokens for a response")
    request_timeout_seconds: float = Field(
        default=300.0, description="Timeout for a single generation request"
    )

class PipelineSettings(BaseSettings):
    """Document-to-graph pipeline settings."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    # Chunking
    chunk_size_words: int = Field(default=1000, ge=1, description="Words per chunk window")
    chunk_overlap_words: int = Field(default=100, ge=0, description="Words shared by neighbouring chunks")
    use_full_document: bool = Field(
        default=True, description="Generate statements for the whole document in one call"
    )
    max_concurrent_chunks: int = Field(default=5, ge=1, description="Concurrent chunk generation calls")

    # Graph preparation
    create_constraints: bool = Field(
        default=True, description="Create uniqueness constraints from the extracted schema"
    )

    # Correction
    enable_completion_pass: bool = Field(
        default=True, description="Synthesize missing required relationships"
    )
    promote_read_edges: bool = Field(
        default=True, description="Turn MATCH relationship patterns into MERGE upserts"
    )

    # Prompt limits
    full_document_max_chars: int = Field(default=15000, description="Text sent for full-document generation")
    chunk_max_chars: int = Field(default=2000, description="Text sent per chunk")
    schema_max_chars: int = Field(default=10000, description="Text sent for schema extraction")
    full_document_max_tokens: int = Field(default=8192, description="Max tokens for full-document output")
    chunk_max_tokens: int = Field(default=1024, description="Max tokens per chunk output")
    schema_max_tokens: int = Field(default=2048, description="Max tokens for schema output")

    # Retry
    retry_max_attempts: int = Field(default=3, ge=1, description="Attempts per external call")
    generation_initial_delay: float = Field(default=2.0, description="First generation retry delay (s)")
    generation_max_delay: float = Field(default=30.0, description="Generation retry delay cap (s)")
    schema_initial_delay: float = Field(default=1.0, description="First schema retry delay (s)")
    schema_max_delay: float = Field(default=10.0, description="Schema retry delay cap (s)")

    # Statement archive
    save_statements: bool = Field(default=True, description="Write generated statements to disk")
    statement_output_dir: str = Field(default="./cypher-output", description="Statement archive directory")


class StorageSettings(BaseSettings):
    """Where documents, segments, schemas and results are kept."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    backend: Annotated[Literal["memory", "file"], CaseInsensitive] = Field(
        default="file", description="memory (lost on exit) or file (JSON under data_dir)"
    )
    data_dir: str = Field(default="./data", description="Root of the file backend")
    upload_dir: str = Field(default="./uploads", description="Uploaded source files")


class APISettings(BaseSettings):
    """HTTP service."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = Field(default="0.0.0.0", description="Bind address")  # nosec B104 - container deployment
    port: int = Field(default=8000, description="Bind port")
    debug: bool = Field(default=False, description="Auto-reload under uvicorn")
    cors_origins: list[str] = Field(default=["*"], description="Origins allowed by CORS")
    max_upload_size_mb: int = Field(default=50, description="Largest accepted upload")


class ObservabilitySettings(BaseSettings):
    """Log output."""

    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_")

    log_format: Literal["json", "console"] = Field(
        default="json", description="json lines, or colored console output for local runs"
    )


class Settings(BaseSettings):
    """All sections, read once per process."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="Doc2Graph Pipeline", description="Reported in logs as the service")
    app_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    neo4j: Neo4jSettings = Field(default_factory=Neo4jSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    api: APISettings = Field(default_factory=APISettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)


@lru_cache
def get_settings() -> Settings:
    return Settings()
