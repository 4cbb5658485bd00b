"""Application settings."""

import os
from typing import Optional
from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Conversation memory configuration settings."""

    # Storage
    db_path: str = "data/conversations.db"

    # Context assembly
    max_recent_turns: int = Field(8, ge=0)  # Verbatim turns sent with each request
    max_token_budget: int = Field(3000, ge=0)  # Summary + turns token ceiling

    # Summary refresh
    summarization_enabled: bool = True
    max_tokens_before_summary: int = Field(2000, ge=0)
    max_summary_tokens: int = Field(400, gt=0)
    summary_overlap_turns: int = Field(2, ge=0)

    # LLM Provider settings (summary generation)
    llm_provider: str = "anthropic"  # "openai" or "anthropic"
    llm_model: Optional[str] = None  # Override default model

    # API Keys
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    # Logging
    verbose: bool = False

    def __init__(self, **data):
        # Auto-load API keys from environment if not provided
        if "openai_api_key" not in data or data["openai_api_key"] is None:
            data["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

        if "anthropic_api_key" not in data or data["anthropic_api_key"] is None:
            data["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")

        super().__init__(**data)

    def get_llm_api_key(self) -> Optional[str]:
        """Get the API key for the configured LLM provider."""
        if self.llm_provider == "openai":
            return self.openai_api_key
        elif self.llm_provider == "anthropic":
            return self.anthropic_api_key
        return None
