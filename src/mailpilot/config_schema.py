"""Pydantic configuration schema for mailpilot.

Mirrors the structure of config.yaml. The file is validated against these
models on startup and on every hot-reload. Secrets (bot token, API keys)
are read from the environment and are never part of this schema.

Usage:
    from mailpilot.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class OperatorConfig(BaseModel):
    """The single human the assistant acts for."""

    chat_id: str = Field(description="Chat identity allowed to confirm actions")
    email: str = Field(description="Mailbox address used to recognise the operator's own messages")
    first_name: str = Field(default="", description="Operator first name used in prompts")
    last_name: str = Field(default="", description="Operator last name used in prompts")
    signature: str = Field(default="", description="Signature appended to drafted replies")
    use_signature: bool = Field(
        default=False,
        description="Ask the model to include the signature in drafts",
    )
    location: str = Field(default="", description="Current location, injected into prompts")
    focus: str = Field(default="", description="Current focus/status line, injected into prompts")

    @field_validator("chat_id")
    @classmethod
    def validate_chat_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Operator chat_id cannot be empty")
        return v.strip()

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Store the address lowercased so sender comparison is case-insensitive."""
        if "@" not in v:
            raise ValueError(f"'{v}' is not an email address")
        return v.strip().lower()

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class MailConfig(BaseModel):
    """Microsoft Graph mailbox configuration."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=["Mail.ReadWrite", "Mail.Send", "User.Read"],
        description="Microsoft Graph API permission scopes",
    )
    token_cache_path: str = Field(
        default="data/token_cache.json",
        description="Path to MSAL token cache file",
    )

    @field_validator("token_cache_path")
    @classmethod
    def validate_token_cache_path(cls, v: str) -> str:
        """Ensure token cache path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Token cache path cannot be empty")
        if ".." in v:
            raise ValueError("Token cache path cannot contain '..' (path traversal)")
        return v


class LLMConfig(BaseModel):
    """Language model endpoint, retry policy and context budget."""

    provider: Literal["openai_compatible", "anthropic"] = Field(
        default="openai_compatible",
        description="Completion backend to use",
    )
    endpoint: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        description="Chat completions URL (openai_compatible provider only)",
    )
    model: str = Field(default="gpt-4o-mini", description="Model used for drafting replies")
    classification_model: str | None = Field(
        default=None,
        description="Model used for classification (defaults to 'model')",
    )
    max_tokens: int = Field(
        default=1024,
        ge=64,
        le=16384,
        description="Maximum completion tokens per call",
    )
    request_timeout_seconds: float = Field(default=60.0, gt=0, le=600)
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Additional attempts after the first failed call",
    )
    base_seed: int = Field(default=42, description="Seed of the first attempt")
    backoff_base_seconds: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="Delay before retry n is backoff_base_seconds ** (n - 1)",
    )
    token_ceiling: int = Field(
        default=80_000,
        ge=1000,
        description="Prompt tokens above which the rolling conversation is trimmed",
    )
    trim_fraction: float = Field(
        default=0.1,
        gt=0,
        le=1,
        description="Fraction of oldest turns dropped per trim",
    )
    max_follow_up_rounds: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Rounds of clarifying questions before a decision is forced",
    )
    context_dir: str = Field(
        default="context",
        description="Directory of *.md background files included in drafting prompts",
    )

    @property
    def effective_classification_model(self) -> str:
        return self.classification_model or self.model


class SimilarityConfig(BaseModel):
    """Duplicate and near-duplicate detection for bulk actions."""

    enabled: bool = Field(default=True, description="Offer bulk actions on similar emails")
    threshold: float = Field(
        default=0.85,
        ge=0,
        le=1,
        description="Minimum cosine similarity for an embedding match",
    )
    embedding_timeout_seconds: float = Field(default=5.0, gt=0, le=120)
    batch_size: int = Field(default=5, ge=1, le=100)
    max_matches: int = Field(default=100, ge=1, le=1000)
    embedding_token_budget: int = Field(
        default=1000,
        ge=16,
        description="Tokens of subject+from+body sent to the embedding model",
    )
    signature_tokens: int = Field(
        default=100,
        ge=1,
        description="Tokens of subject+from used as the cheap signature",
    )
    embeddings_endpoint: str | None = Field(
        default=None,
        description="Embeddings URL; when unset, tier-1 matches are not refined",
    )
    embeddings_model: str = Field(default="text-embedding-3-small")


class TriageConfig(BaseModel):
    """Triage loop configuration."""

    interval_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often to check for new mail (minutes)",
    )
    max_threads: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Max unread thread candidates fetched per cycle",
    )
    confirmation_wait_seconds: float = Field(
        default=600.0,
        ge=0,
        description="How long a cycle waits for the operator before deferring the rest",
    )
    create_drafts: bool = Field(
        default=False,
        description="Mirror each generated reply into the mailbox as a draft",
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(default=True)


class AuditConfig(BaseModel):
    """SQLite audit trail of model calls and mailbox actions."""

    enabled: bool = Field(default=True)
    db_path: str = Field(default="data/mailpilot.db")
    log_prompts: bool = Field(
        default=False,
        description="Store full prompts and responses (may contain email content)",
    )


class AppConfig(BaseModel):
    """Root configuration model for mailpilot."""

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migrations",
    )

    operator: OperatorConfig
    mail: MailConfig
    llm: LLMConfig = Field(default_factory=LLMConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
