
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    ALLOWED_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Full URL wins over the DB_* parts (tests use sqlite+aiosqlite)
    DATABASE_URL: str = ""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "docbot"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = "postgres"

    # Embeddings (OpenAI-compatible endpoint, Mistral by default)
    EMBED_API_KEY: str = ""
    EMBED_BASE_URL: str = "https://api.mistral.ai/v1"
    EMBED_MODEL: str = "mistral-embed"
    EMBED_DIM: int = 1024
    EMBED_TIMEOUT: float = 30.0
    EMBED_MAX_RETRIES: int = 3
    EMBED_RETRY_NETWORK_ERRORS: bool = False
    # 55 per group with a 61s pause keeps us under a 60 req/min quota
    EMBED_BATCH_SIZE: int = 55
    EMBED_BATCH_DELAY_SECONDS: float = 61.0

    # Chat completions (OpenAI-compatible endpoint, Groq by default)
    LLM_API_KEY: str = ""
    LLM_BASE_URL: str = "https://api.groq.com/openai/v1"
    LLM_MODEL: str = "llama-3.3-70b-versatile"
    LLM_TEMPERATURE: float = 0.2
    LLM_MAX_TOKENS: int = 500
    LLM_TIMEOUT: float = 60.0

    # OCR / vision for images
    MISTRAL_API_KEY: str = ""
    MISTRAL_BASE_URL: str = "https://api.mistral.ai"
    OCR_MODEL: str = "mistral-ocr-latest"
    VISION_MODEL: str = "pixtral-12b-2409"
    OCR_TIMEOUT: float = 120.0

    # WhatsApp delivery (11za)
    WHATSAPP_API_URL: str = "https://api.11za.in/apis/sendMessage/sendMessages"
    WHATSAPP_TEMPLATE_API_URL: str = "https://api.11za.in/apis/template/sendTemplate"
    WHATSAPP_TIMEOUT: float = 30.0
    WHATSAPP_VERIFY_TOKEN: str = ""

    CHUNK_SIZE: int = 1500
    CHUNK_OVERLAP: int = 200
    RETRIEVAL_TOP_K: int = 5
    HISTORY_TURNS: int = 10
    INGESTION_JOBS_KEPT: int = 200

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

settings = Settings()
