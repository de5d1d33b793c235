import base64
import re
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from hospital_intake.code_utils.config import SETTINGS, Settings
from hospital_intake.code_utils.errors import ClassificationUnavailable, InvalidInput
from hospital_intake.code_utils.logger import get_logger
from hospital_intake.code_utils.models import SPECIALTIES, ClassificationResult
from hospital_intake.code_utils.narrative_parser import parse_narrative

logger = get_logger(__name__)

# Leading bytes of every accepted upload type.
_SIGNATURES = [
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
]

# Page objects in a PDF body; "/Type /Pages" (the page tree) is excluded.
_PDF_PAGE = re.compile(rb"/Type\s*/Page(?![a-zA-Z])")


def detect_mime_type(document: bytes) -> Optional[str]:
    for signature, mime in _SIGNATURES:
        if document.startswith(signature):
            return mime
    if len(document) >= 12 and document[:4] == b"RIFF" and document[8:12] == b"WEBP":
        return "image/webp"
    return None


def validate_document(document: bytes, settings: Settings = SETTINGS) -> str:
    """
    Check size and type of an upload and return its MIME type.

    Accepted: JPEG, PNG, GIF, WEBP images and single-page PDFs up to
    settings.max_document_bytes. Raises InvalidInput otherwise.
    """
    if not isinstance(document, (bytes, bytearray)) or not document:
        raise InvalidInput("Medical document is required")
    if len(document) > settings.max_document_bytes:
        raise InvalidInput(
            f"Document is {len(document)} bytes; the limit is {settings.max_document_bytes} bytes"
        )
    mime = detect_mime_type(bytes(document))
    if mime is None:
        raise InvalidInput("Unsupported document type; upload an image or a single-page PDF")
    if mime == "application/pdf":
        pages = len(_PDF_PAGE.findall(document))
        if pages > 1:
            raise InvalidInput(f"PDF has {pages} pages; upload a single-page document")
    return mime


SYSTEM_INSTRUCTIONS = f"""You are a medical AI assistant analyzing a medical report, receipt or prescription.
Provide a detailed analysis of the patient's condition with the following structure:
1. Patient Condition: a clear one-line summary of the medical condition or diagnosis
2. Severity Rating: rate the condition on a scale of 1-10, where 1 is minor and 10 is critical/life-threatening
3. Priority Level: Low, Medium, High or Urgent for hospital queue placement
4. Recommended Actions: immediate medical steps needed
5. Waiting Time Impact: how waiting might affect the patient's condition
6. Specialist Recommendation: exactly one of {", ".join(SPECIALTIES)}

State the severity explicitly as "Severity: X/10" so it can be parsed.
If no medical information is visible, respond with:
"No clear medical information detected. Severity: 1/10. Priority Level: Low. Specialist Recommendation: General Medicine"
This is decision support for queue placement, not a diagnosis.
"""


class ClassifierGateway:
    """
    Sends one document to the OpenAI Responses API and parses the answer.

    - Stateless: nothing is stored, every call is one network round trip.
    - Bounded: the SDK client gets settings.classifier_timeout_seconds and
      max_retries=0, so the caller alone decides what to do on failure.
    - Transport failures (timeout, connection, non-2xx) raise
      ClassificationUnavailable; unusable text never raises, it parses to defaults.
    """

    def __init__(self, settings: Settings = SETTINGS, client: Any = None) -> None:
        self.settings = settings
        if client is None:
            if not settings.openai_api_key:
                raise RuntimeError("Missing OPENAI_API_KEY environment variable.")
            client = OpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.classifier_timeout_seconds,
                max_retries=0,
            )
        self.client = client

    @staticmethod
    def build_content(document: bytes, mime: str) -> List[Dict[str, Any]]:
        encoded = base64.b64encode(document).decode("ascii")
        data_url = f"data:{mime};base64,{encoded}"
        if mime == "application/pdf":
            attachment: Dict[str, Any] = {
                "type": "input_file",
                "filename": "document.pdf",
                "file_data": data_url,
            }
        else:
            attachment = {"type": "input_image", "image_url": data_url}
        return [
            {"type": "input_text", "text": "Analyze this medical document for hospital queue placement."},
            attachment,
        ]

    def request_narrative(self, document: bytes, mime: str) -> str:
        try:
            resp = self.client.responses.create(
                model=self.settings.openai_model,
                instructions=SYSTEM_INSTRUCTIONS,
                input=[{"role": "user", "content": self.build_content(document, mime)}],
                temperature=0.2,
                max_output_tokens=1024,
            )
        except openai.APITimeoutError as exc:
            raise ClassificationUnavailable("Classification timed out") from exc
        except openai.APIStatusError as exc:
            raise ClassificationUnavailable(
                f"Classifier returned HTTP {exc.status_code}"
            ) from exc
        except openai.OpenAIError as exc:
            raise ClassificationUnavailable(f"Classifier unreachable: {exc}") from exc

        # Missing text is treated as an empty answer, which parses to defaults.
        return getattr(resp, "output_text", None) or ""

    def classify(self, document: bytes) -> ClassificationResult:
        mime = validate_document(document, self.settings)
        narrative = self.request_narrative(bytes(document), mime)
        result = parse_narrative(narrative)
        logger.info(
            "Classified %s document: severity=%s specialty=%s",
            mime,
            result.severity,
            result.recommended_specialty,
        )
        return result
