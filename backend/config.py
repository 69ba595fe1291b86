import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    PROJECT_NAME: str = "Statement Importer"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"

    # Database: use /app/data for persistence with Docker volumes
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite:////app/data/statement_importer.db",
    )

    # Azure OpenAI
    AZURE_OPENAI_API_KEY: str = os.getenv("AZURE_OPENAI_API_KEY", "")
    AZURE_OPENAI_ENDPOINT: str = os.getenv("AZURE_OPENAI_ENDPOINT", "")
    AZURE_OPENAI_API_VERSION: str = os.getenv("AZURE_OPENAI_API_VERSION", "2024-12-01-preview")
    AZURE_OPENAI_DEPLOYMENT: str = os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")
    AZURE_OPENAI_VISION_DEPLOYMENT: str = os.getenv("AZURE_OPENAI_VISION_DEPLOYMENT", "gpt-4o")

    # Object storage (local directory, one object per uploaded statement)
    UPLOAD_DIR: str = os.getenv(
        "UPLOAD_DIR",
        os.path.join(os.path.dirname(os.path.abspath(__file__)), "uploads"),
    )
    MAX_FILE_SIZE_MB: int = int(os.getenv("MAX_FILE_SIZE_MB", "10"))
    IMPORT_RETENTION_HOURS: int = int(os.getenv("IMPORT_RETENTION_HOURS", "24"))

    # JWT Authentication
    JWT_SECRET: str = os.getenv("JWT_SECRET", "statement-importer-dev-secret-change-in-production")
    JWT_EXPIRY_HOURS: int = int(os.getenv("JWT_EXPIRY_HOURS", "72"))

    # PDF Processing
    PDF_TO_IMAGE_DPI: int = 200
    PAGES_PER_CHUNK: int = int(os.getenv("PAGES_PER_CHUNK", "8"))
    OCR_FALLBACK_ENABLED: bool = os.getenv("OCR_FALLBACK_ENABLED", "true").lower() == "true"

    # Extraction service calls
    EXTRACTION_TIMEOUT_SECONDS: float = float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "120"))
    CATEGORIZATION_TIMEOUT_SECONDS: float = float(os.getenv("CATEGORIZATION_TIMEOUT_SECONDS", "60"))
    RATE_LIMIT_RETRIES: int = 2
    TIMEOUT_RETRIES: int = 1
    RATE_LIMIT_BACKOFF_SECONDS: float = float(os.getenv("RATE_LIMIT_BACKOFF_SECONDS", "5"))
    CHUNK_DELAY_SECONDS: float = float(os.getenv("CHUNK_DELAY_SECONDS", "1"))
    DEDUP_DESCRIPTION_CHARS: int = 30

    # Persistence / categorization / commit
    INSERT_BATCH_SIZE: int = 50
    CATEGORIZE_BATCH_SIZE: int = 20
    LEARNED_MATCH_CONFIDENCE: float = 0.9
    DUPLICATE_AMOUNT_EPSILON: float = 0.01
    MAX_COMMIT_TRANSACTIONS: int = 1000
    NOTE_MAX_LENGTH: int = 500
    IMPORTED_PAYMENT_METHOD: str = "imported"

    # Client wizard
    WIZARD_POLL_INTERVAL_SECONDS: float = float(os.getenv("WIZARD_POLL_INTERVAL_SECONDS", "2"))
    WIZARD_STAGE_TIMEOUT_SECONDS: float = float(os.getenv("WIZARD_STAGE_TIMEOUT_SECONDS", "300"))

    # CORS: set ALLOWED_ORIGINS env var as comma-separated URLs for production
    # e.g. ALLOWED_ORIGINS=https://importer.example.com,http://localhost:3000
    ALLOWED_ORIGINS: list = [
        x.strip()
        for x in os.getenv(
            "ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"
        ).split(",")
    ]


settings = Settings()

# Ensure upload directory exists
os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
