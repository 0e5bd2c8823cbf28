"""Document sources: the regulatory register API and local markdown files."""
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
import httpx
from config import REGISTER_API_URL, MARKDOWN_DIRECTORY
from errors import ProviderError, ValidationError
from models.document import RawDocument
from services.chunking_engine import parse_header_metadata

logger = logging.getLogger(__name__)

_DATE_PREFIX = re.compile(r"^(\d{4})(\d{2})(\d{2})")

# Checked in order; first hit wins
DOCUMENT_TYPE_HINTS = [
    ("guideline", "Guideline"),
    ("circular", "Circular"),
    ("consultation", "Consultation"),
    ("notice", "Notice"),
    ("amendment", "Amendment"),
    ("supervisory", "Supervisory Manual"),
]

TOPIC_TERMS = [
    "banking", "deposit", "capital", "liquidity", "risk management",
    "compliance", "authorization", "supervision", "regulatory",
    "basel", "credit risk", "operational risk", "market risk",
    "anti-money laundering", "customer due diligence",
    "reporting", "disclosure", "audit", "governance",
    "stress testing", "capital adequacy", "leverage ratio",
]


class DocumentSource(ABC):
    """Paged listing of raw documents from an external system."""

    name = "unknown"

    @abstractmethod
    def list_documents(self, page_token: Optional[str] = None) -> Tuple[List[RawDocument], Optional[str]]:
        """
        Fetch one page of documents.

        Args:
            page_token: Token returned by the previous call, None for the first page

        Returns:
            (documents, next_page_token); next_page_token is None on the last page

        Raises:
            ProviderError: If the source cannot be read
        """

    @abstractmethod
    def get_document_by_id(self, doc_id: str) -> Optional[RawDocument]:
        """Return a single document, or None if the source does not have it."""


def issue_date_from_id(doc_id: str) -> Optional[str]:
    """YYYY-MM-DD from a leading YYYYMMDD in the document id, if present."""
    match = _DATE_PREFIX.match(doc_id)
    if not match:
        return None
    year, month, day = match.groups()
    return f"{year}-{month}-{day}"


def infer_document_type(title: str, content: str) -> str:
    haystack = f"{title}\n{content}".lower()
    for hint, doc_type in DOCUMENT_TYPE_HINTS:
        if hint in haystack:
            return doc_type
    return "Document"


class MarkdownDocumentSource(DocumentSource):
    """Documents stored as ``<doc_id>.md`` files with ``## Page n`` markers."""

    name = "markdown"

    def __init__(self, directory: str = MARKDOWN_DIRECTORY, page_size: int = 50):
        """
        Initialize MarkdownDocumentSource.

        Args:
            directory: Directory containing markdown files
            page_size: Files returned per list_documents call
        """
        self.directory = directory
        self.page_size = page_size

    def _filenames(self) -> List[str]:
        if not os.path.isdir(self.directory):
            raise ProviderError(f"Markdown directory not found: {self.directory}")
        return sorted(f for f in os.listdir(self.directory) if f.endswith(".md"))

    def list_documents(self, page_token: Optional[str] = None) -> Tuple[List[RawDocument], Optional[str]]:
        filenames = self._filenames()
        offset = int(page_token) if page_token else 0
        page = filenames[offset:offset + self.page_size]

        documents = []
        for filename in page:
            try:
                documents.append(self._load(filename))
            except (OSError, UnicodeDecodeError, ValidationError) as e:
                logger.warning(f"Skipping unreadable markdown file {filename}: {str(e)}")

        next_offset = offset + self.page_size
        next_token = str(next_offset) if next_offset < len(filenames) else None
        logger.info(f"Read {len(documents)} markdown documents (offset {offset} of {len(filenames)})")
        return documents, next_token

    def get_document_by_id(self, doc_id: str) -> Optional[RawDocument]:
        filename = f"{doc_id}.md"
        if not os.path.isfile(os.path.join(self.directory, filename)):
            return None
        return self._load(filename)

    def _load(self, filename: str) -> RawDocument:
        path = os.path.join(self.directory, filename)
        with open(path, "r", encoding="utf-8") as f:
            raw_text = f.read()

        doc_id = os.path.splitext(filename)[0]
        header = parse_header_metadata(raw_text)
        title = header.get("title") or doc_id
        lowered = raw_text.lower()

        topics = [term for term in TOPIC_TERMS if term in lowered]
        if header.get("subject"):
            topics.append(header["subject"])

        return RawDocument(
            external_id=doc_id,
            title=title,
            raw_text=raw_text,
            source="BRDR_MARKDOWN",
            doc_type=infer_document_type(title, raw_text),
            issue_date=issue_date_from_id(doc_id),
            topics=topics,
            metadata={
                "filename": filename,
                "author": header.get("author"),
                "subject": header.get("subject"),
                "creator": header.get("creator"),
                "language": "en",
            }
        )


class RegisterApiDocumentSource(DocumentSource):
    """Metadata from the regulatory register search API, text from local markdown."""

    name = "register_api"

    def __init__(
        self,
        api_url: str = REGISTER_API_URL,
        markdown_directory: Optional[str] = MARKDOWN_DIRECTORY,
        page_size: int = 20,
        timeout: float = 30.0
    ):
        """
        Initialize RegisterApiDocumentSource.

        Args:
            api_url: Register document-search endpoint
            markdown_directory: Where ``<docId>.md`` text files live; None for metadata only
            page_size: Records requested per API page
            timeout: Request timeout in seconds
        """
        self.api_url = api_url
        self.markdown_directory = markdown_directory
        self.page_size = page_size
        self.timeout = timeout

    def _payload(self, page_number: int) -> Dict[str, Any]:
        return {
            "langCode": "eng",
            "pageNumber": str(page_number),
            "pageSize": str(self.page_size),
            "sortBy": "RELEVANCE",
            "docSrchCriteriaDtoList": [
                {"fieldCode": "version", "valueList": ["CURRENT"]},
                {"fieldCode": "language", "valueList": ["eng"]},
                {"fieldCode": "issueDateGrp", "valueList": ["ALL"]}
            ]
        }

    def fetch_page(self, page_number: int) -> Tuple[List[Dict[str, Any]], int]:
        """
        POST one search page to the register API.

        Returns:
            (raw records, total record count)

        Raises:
            ProviderError: On HTTP or network failure
        """
        headers = {
            "Content-Type": "application/json; charset=UTF-8",
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest"
        }

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.api_url, headers=headers, json=self._payload(page_number))
        except httpx.TimeoutException as e:
            raise ProviderError(f"Register API timeout on page {page_number}", transient=True) from e
        except httpx.RequestError as e:
            raise ProviderError(f"Register API network error on page {page_number}: {str(e)}", transient=True) from e

        if response.status_code != 200:
            raise ProviderError(
                f"Register API returned {response.status_code} on page {page_number}",
                transient=response.status_code >= 500
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Register API returned malformed JSON on page {page_number}", transient=False) from e
        records = data.get("resultList") or []
        total = data.get("totalRecordNumber") or 0
        logger.info(f"Register API page {page_number}: {len(records)} documents, {total} total records")
        return records, total

    def list_documents(self, page_token: Optional[str] = None) -> Tuple[List[RawDocument], Optional[str]]:
        page_number = int(page_token) if page_token else 1
        records, total = self.fetch_page(page_number)

        documents = []
        for record in records:
            try:
                document = self._to_raw_document(record)
            except ValidationError as e:
                logger.warning(f"Skipping invalid register record {record.get('docId')}: {str(e)}")
                continue
            if document is not None:
                documents.append(document)

        if not records or page_number * self.page_size >= total:
            return documents, None
        return documents, str(page_number + 1)

    def get_document_by_id(self, doc_id: str) -> Optional[RawDocument]:
        page_token = None
        while True:
            documents, page_token = self.list_documents(page_token)
            for document in documents:
                if document.external_id == doc_id:
                    return document
            if page_token is None:
                return None

    @staticmethod
    def validate_record(record: Dict[str, Any]) -> bool:
        for field_name in ("docId", "docLongTitle"):
            if not record.get(field_name):
                logger.warning(f"Invalid document: missing {field_name} in {record.get('docId')}")
                return False
        return True

    def _to_raw_document(self, record: Dict[str, Any]) -> Optional[RawDocument]:
        if not self.validate_record(record):
            return None

        doc_id = record["docId"]
        topic_list = record.get("docTopicSubtopicList") or []
        topics = [
            f"{t.get('topicDesc') or 'N/A'}: {t.get('subtopicDesc') or 'N/A'}"
            for t in topic_list
        ]

        concepts = []
        for value in [record.get("docTypeDesc")] + [
            desc for t in topic_list for desc in (t.get("topicDesc"), t.get("subtopicDesc"))
        ]:
            if value and value not in concepts:
                concepts.append(value)

        return RawDocument(
            external_id=doc_id,
            title=record["docLongTitle"],
            raw_text=self._read_markdown(doc_id),
            source="BRDRAPI",
            doc_type=record.get("docTypeDesc"),
            issue_date=record.get("issueDate"),
            topics=topics,
            metadata={
                "doc_uuid": record.get("docUuid"),
                "doc_type_code": record.get("docTypeCode"),
                "version_code": record.get("versionCode"),
                "doc_desc": record.get("docDesc"),
                "guideline_no": record.get("guidelineNo"),
                "supersession_date": record.get("supersessionDate"),
                "concepts": concepts,
                "language": "en",
            }
        )

    def _read_markdown(self, doc_id: str) -> str:
        """Full text for a document, empty if no markdown file exists."""
        if not self.markdown_directory:
            return ""
        path = os.path.join(self.markdown_directory, f"{doc_id}.md")
        if not os.path.isfile(path):
            logger.debug(f"No markdown text for {doc_id}; storing metadata only")
            return ""
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Unreadable markdown text for {doc_id}; storing metadata only: {str(e)}")
            return ""
