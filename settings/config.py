from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
        
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Statement Parser API"

    # Persistence: "memory" keeps everything in-process, "json" writes one file per collection
    STORE_BACKEND: str = "memory"
    STORE_DIR: str = "/tmp/statement_parser_store"

    # Trained models are dumped here with joblib; unset disables model files.
    # ML and OCR switches live in services.config (FF_ML_ENABLED, FF_OCR_ENABLED).
    MODELS_DIR: str | None = None

    LOG_LEVEL: str = "INFO"

settings = Settings()
