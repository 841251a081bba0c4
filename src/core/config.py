from pydantic import Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = Field("invoice-scanner-api", alias="APP_NAME")
    app_env: str = Field("dev", alias="APP_ENV")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # CORS allowed origins (comma-separated list)
    cors_origins: str = Field("http://localhost:5173", alias="CORS_ORIGINS")

    # Inference server (OpenAI-compatible chat completions, e.g. llama-server)
    llama_base_url: str = Field("http://127.0.0.1:8080", alias="LLAMA_BASE_URL")
    llama_api_key: str | None = Field(default=None, alias="LLAMA_API_KEY")
    llama_model: str = Field("local", alias="LLAMA_MODEL")
    llm_timeout_seconds: float = Field(25.0, alias="LLM_TIMEOUT_SECONDS")
    llm_max_retries: int = Field(2, alias="LLM_MAX_RETRIES")
    llm_retry_backoff_seconds: float = Field(1.0, alias="LLM_RETRY_BACKOFF_SECONDS")

    # OCR (tesseract subprocess)
    tesseract_cmd: str = Field("tesseract", alias="TESSERACT_CMD")
    tesseract_lang: str = Field("eng", alias="TESSERACT_LANG")
    tesseract_oem: int = Field(1, alias="TESSERACT_OEM")
    tesseract_psm: int = Field(4, alias="TESSERACT_PSM")
    tmp_dir: str = Field("tmp", alias="TMP_DIR")

    # Text triage
    triage_keywords: str = Field(
        "invoice,factuur,vat,btw,tax,total,subtotal,amount due,balance due,"
        "due date,invoice date,iban,kvk,chamber,reference",
        alias="TRIAGE_KEYWORDS",
    )
    triage_max_chars: int = Field(12000, alias="TRIAGE_MAX_CHARS")

    # Document pipeline limits
    document_timeout_seconds: float = Field(60.0, alias="DOCUMENT_TIMEOUT_SECONDS")
    max_concurrent_documents: int = Field(2, alias="MAX_CONCURRENT_DOCUMENTS")

    # Exact Online
    exact_base_url: str = Field("https://start.exactonline.nl", alias="EXACT_BASE_URL")
    exact_client_id: str | None = Field(default=None, alias="EXACT_CLIENT_ID")
    exact_client_secret: str | None = Field(default=None, alias="EXACT_CLIENT_SECRET")
    exact_redirect_uri: str | None = Field(default=None, alias="EXACT_REDIRECT_URI")
    exact_token_timeout_seconds: float = Field(10.0, alias="EXACT_TOKEN_TIMEOUT_SECONDS")
    exact_api_timeout_seconds: float = Field(30.0, alias="EXACT_API_TIMEOUT_SECONDS")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def triage_keyword_list(self) -> list[str]:
        return [k.strip() for k in self.triage_keywords.split(",") if k.strip()]

settings = Settings()
