"""
Prescription image checks.

Runs text recognition over an uploaded image and counts how many known
medical terms (French and English) appear in it. Two matches or more make
the image "look like" a prescription. This is a heuristic to reduce
obviously wrong uploads; it does not prove authenticity, so its result is
advisory only.
"""
import enum
import io
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import pytesseract
from fastapi import APIRouter, Depends, File, UploadFile
from PIL import Image
from starlette.concurrency import run_in_threadpool

from . import auth, schemas
from .config import MAX_PRESCRIPTION_SIZE, OCR_LANGUAGES
from .exceptions import ValidationFailed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prescriptions", tags=["prescriptions"])

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif")
MIN_KEYWORD_MATCHES = 2

MEDICAL_KEYWORDS = (
    "ordonnance", "prescription", "docteur", "doctor", "médecin",
    "physician", "patient", "posologie", "dosage", "comprimé",
    "tablet", "gélule", "capsule", "sirop", "syrup",
    "matin", "soir", "morning", "evening", "traitement",
    "treatment", "pharmacie", "pharmacy", "clinique", "clinic",
    "hôpital", "hospital", "injection", "pommade", "ointment",
)


class ValidationState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"


@dataclass
class PrescriptionValidationResult:
    text: str
    is_valid: bool
    matched_keywords: List[str] = field(default_factory=list)

    @property
    def match_count(self) -> int:
        return len(self.matched_keywords)


def match_keywords(text: str) -> List[str]:
    """Return the medical keywords found in ``text`` (case-insensitive substring match)."""
    lowered = (text or "").lower()
    return [keyword for keyword in MEDICAL_KEYWORDS if keyword in lowered]


def evaluate_text(text: str) -> PrescriptionValidationResult:
    matched = match_keywords(text)
    return PrescriptionValidationResult(
        text=text or "",
        is_valid=len(matched) >= MIN_KEYWORD_MATCHES,
        matched_keywords=matched,
    )


def check_upload(content_type: Optional[str], size: int) -> None:
    """
    Reject uploads the validator cannot read.

    Raises:
        ValidationFailed: for non-image types (PDFs included) or files over 5MB
    """
    if (content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
        raise ValidationFailed("Invalid file type. Only JPEG, PNG and GIF images are allowed.")
    if size <= 0:
        raise ValidationFailed("Prescription file is empty")
    if size > MAX_PRESCRIPTION_SIZE:
        raise ValidationFailed("File size too large. Maximum 5MB allowed.")


def tesseract_engine(data: bytes) -> str:
    """Extract text from image bytes with Tesseract."""
    with Image.open(io.BytesIO(data)) as image:
        return pytesseract.image_to_string(image, lang=OCR_LANGUAGES)


class PrescriptionValidator:
    """
    Tracks one upload through ``idle -> validating -> valid | invalid``.

    Recognition errors fail closed: the upload is marked invalid and the user
    has to upload again (``reset``). Nothing is retried automatically.
    """

    def __init__(self, engine: Callable[[bytes], str] = tesseract_engine):
        self._engine = engine
        self.state = ValidationState.IDLE
        self.result: Optional[PrescriptionValidationResult] = None

    def reset(self) -> None:
        self.state = ValidationState.IDLE
        self.result = None

    def validate(self, data: bytes, content_type: Optional[str]) -> PrescriptionValidationResult:
        check_upload(content_type, len(data))
        self.reset()
        self.state = ValidationState.VALIDATING
        try:
            text = self._engine(data)
        except Exception as e:
            logger.error(f"Prescription text recognition failed: {e}")
            self.result = PrescriptionValidationResult(text="", is_valid=False)
        else:
            self.result = evaluate_text(text)
            logger.info(
                f"Prescription matched {self.result.match_count} keywords: "
                f"{', '.join(self.result.matched_keywords) or '-'}"
            )

        self.state = ValidationState.VALID if self.result.is_valid else ValidationState.INVALID
        return self.result


def get_validator() -> PrescriptionValidator:
    return PrescriptionValidator()


@router.post("/validate")
async def validate_prescription(
    file: UploadFile = File(...),
    validator: PrescriptionValidator = Depends(get_validator),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Check whether an uploaded image looks like a medical prescription.

    The answer is advisory: the order submission does not trust it.

    Returns:
        dict: {success, data: {isValid, matchedKeywords, matchCount, text, state}}
    """
    data = await file.read()
    result = await run_in_threadpool(validator.validate, data, file.content_type)
    payload = schemas.PrescriptionValidation(
        is_valid=result.is_valid,
        matched_keywords=result.matched_keywords,
        match_count=result.match_count,
        text=result.text,
        state=validator.state.value,
    )
    return {"success": True, "data": payload.model_dump(by_alias=True)}
