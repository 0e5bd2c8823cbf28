"""Configuration management for the regulatory document retrieval service."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
HUGGINGFACE_API_KEY = os.getenv("HUGGINGFACE_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# Embedding Configuration
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-mpnet-base-v2")
EMBEDDING_NATIVE_DIMENSION = int(os.getenv("EMBEDDING_NATIVE_DIMENSION", "768"))
EMBEDDING_TARGET_DIMENSION = int(os.getenv("EMBEDDING_TARGET_DIMENSION", "384"))  # store column width

# Store Configuration
DOCUMENTS_TABLE = os.getenv("DOCUMENTS_TABLE", "documents")
CHUNKS_TABLE = os.getenv("CHUNKS_TABLE", "document_chunks")

# Retrieval Configuration
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.3"))
DEFAULT_SEARCH_LIMIT = int(os.getenv("DEFAULT_SEARCH_LIMIT", "10"))
KEYWORD_WEIGHT = float(os.getenv("KEYWORD_WEIGHT", "0.4"))
VECTOR_WEIGHT = float(os.getenv("VECTOR_WEIGHT", "0.6"))
CONTEXT_WINDOW = int(os.getenv("CONTEXT_WINDOW", "2"))  # +/- chunks around each seed
CONTEXT_MATCH_COUNT = int(os.getenv("CONTEXT_MATCH_COUNT", "3"))
DEFAULT_SEARCH_STRATEGY = os.getenv("DEFAULT_SEARCH_STRATEGY", "hybrid")
PINNED_SEARCH_STRATEGY = os.getenv("PINNED_SEARCH_STRATEGY", "")  # empty = requests choose

# Query Cache Configuration
CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "100"))

# Ingestion Configuration
PROCESSING_BATCH_SIZE = int(os.getenv("PROCESSING_BATCH_SIZE", "10"))
STORAGE_BATCH_SIZE = int(os.getenv("STORAGE_BATCH_SIZE", "50"))
CHUNK_INSERT_BATCH_SIZE = int(os.getenv("CHUNK_INSERT_BATCH_SIZE", "50"))
INGESTION_MAX_WORKERS = int(os.getenv("INGESTION_MAX_WORKERS", "4"))
INGESTION_JOB_HISTORY = int(os.getenv("INGESTION_JOB_HISTORY", "50"))

# Document Sources
REGISTER_API_URL = os.getenv("REGISTER_API_URL", "https://brdr.hkma.gov.hk/restapi/doc-search")
MARKDOWN_DIRECTORY = os.getenv("MARKDOWN_DIRECTORY", "documents-md")
DOCUMENT_URL_TEMPLATE = os.getenv(
    "DOCUMENT_URL_TEMPLATE",
    "https://brdr.hkma.gov.hk/eng/doc-ldg/docId/getPdf/{doc_id}/{doc_id}.pdf"
)

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
