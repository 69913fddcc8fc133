import os

MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "20"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024
ALLOWED_MIME_TYPES = {
    "application/pdf",
    "application/x-pdf",
    "application/octet-stream",
}
ALLOWED_EXTENSIONS = {".pdf"}
EXPECTED_BEARER = os.getenv("STATEMENT_SERVICE_BEARER_TOKEN", "").strip() or None

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
GPT_MODEL = os.getenv("GPT_MODEL", "gpt-4o-mini")
DEFAULT_PARSER = os.getenv("DEFAULT_PARSER", "ai").strip().lower()

QPDF_BIN = os.getenv("QPDF_BIN", "qpdf")
TEMP_DIR = os.getenv("STATEMENT_TEMP_DIR", "/tmp/bank-statements")
# Below this many characters the PDF is treated as image-only.
MIN_TEXT_LENGTH = int(os.getenv("MIN_TEXT_LENGTH", "100"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
