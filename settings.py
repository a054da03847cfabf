from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    # API Keys
    slack_bot_token: str = Field(..., alias="SLACK_BOT_TOKEN")
    slack_signing_secret: str = Field(..., alias="SLACK_SIGNING_SECRET")
    apify_token: str = Field(..., alias="APIFY_TOKEN")
    deepgram_api_key: str = Field(..., alias="DEEPGRAM_API_KEY")
    gemini_api_key: str = Field(..., alias="GEMINI_API_KEY")
    groq_api_key: Optional[str] = Field(None, alias="GROQ_API_KEY")
    slack_bot_user_id: Optional[str] = Field(None, alias="SLACK_BOT_USER_ID")

    # Service Config
    scraper_actor: str = Field("apify~instagram-scraper", alias="INSTAGRAM_SCRAPER_ACTOR")
    gemini_model: str = "gemini-2.5-flash"
    groq_model: str = "llama-3.3-70b-versatile"
    deepgram_model: str = "nova-2"
    transcription_language: str = "en-US"
    scrape_timeout: float = 120.0
    http_timeout: float = 60.0

    # Runtime
    port: int = Field(8080, alias="PORT")
    log_file: Path = Path("comment_bot.log")

    # Workflow Magic Numbers
    cooldown_seconds: float = 15.0
    warning_delay_seconds: float = 15.0
    default_comments: int = 5
    max_comments: int = 60
    default_language: str = "english"
    supported_languages: List[str] = [
        "english",
        "spanish",
        "french",
        "german",
        "portuguese",
        "italian",
    ]

    # LLM Settings
    llm_temperature: float = 0.9
    llm_max_tokens: int = 4000
    retry_attempts: int = 3
    retry_initial_delay: float = 1.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", env_file_encoding='utf-8')

settings = Settings()
