"""
Field schemas per document type.

Each schema lists, in order, the fields that can be pulled out of OCR text,
which of them are required, and the pattern used for each one. Every pattern
has exactly one capture group holding the value. Schemas are built and checked
once at import time.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Pattern, Tuple, Union

from errors import ConfigurationError
from models import DocumentType

logger = logging.getLogger(__name__)

# Field labels as they appear on cards
FIRST_NAME = r"first\s*name|given\s*names?|fname"
LAST_NAME = r"last\s*name|surname|family\s*name|lname"
BIRTH_DATE = r"date\s*of\s*birth|dob|birth\s*date"
LICENSE_NUMBER = r"licen[cs]e\s*(?:number|no)|dl\s*(?:number|no)|lic\s*no"
PASSPORT_NUMBER = r"passport\s*(?:number|no)"
ID_NUMBER = r"id\s*(?:number|no)|national\s*id(?:\s*(?:number|no)|(?=[ \t]*[:#]))"
ADDRESS = r"address|residence"
CITY = r"city|municipality"
STATE = r"state|province"
ZIP_CODE = r"zip(?:\s*code)?|postal\s*code"
COUNTRY = r"country|nation"
NATIONALITY = r"nationality|citizenship|citizen"
BIRTH_PLACE = r"place\s*of\s*birth|born"
ISSUE_DATE = r"issue\s*date|date\s*of\s*issue|issued"
EXPIRY_DATE = r"expiry\s*date|expiration\s*date|date\s*of\s*expiry|expires|exp"
OTHER_LABELS = r"sex|gender|height|hgt|weight|eyes|hair|class|signature"

# A value ends at the end of its line or where the next known label starts
STOP_LABELS = "|".join([
    FIRST_NAME, LAST_NAME, BIRTH_DATE, LICENSE_NUMBER, PASSPORT_NUMBER, ID_NUMBER,
    ADDRESS, CITY, STATE, ZIP_CODE, NATIONALITY, COUNTRY, BIRTH_PLACE, ISSUE_DATE,
    EXPIRY_DATE, OTHER_LABELS,
])
NEXT_LABEL = rf"[ \t,]+(?:{STOP_LABELS})\b"

WORDS = rf"([A-Za-z][A-Za-z'\-]*(?:[ \t]+[A-Za-z][A-Za-z'\-]*)*?)(?=[ \t]*(?:[^A-Za-z \t'\-]|$)|{NEXT_LABEL})"
PLACE = rf"([A-Za-z][A-Za-z'\-]*(?:[ \t,]+[A-Za-z][A-Za-z'\-]*)*?)(?=[ \t,]*(?:[^A-Za-z \t,'\-]|$)|{NEXT_LABEL})"
ALNUM = rf"([A-Za-z0-9][A-Za-z0-9\-]*(?:[ \t][A-Za-z0-9\-]+)*?)(?=[ \t]*(?:[^A-Za-z0-9 \t\-]|$)|{NEXT_LABEL})"
LINE = rf"([A-Za-z0-9#][A-Za-z0-9 \t,.#\-]*?)(?=[ \t,.]*(?:[\r\n]|$)|{NEXT_LABEL})"
DATE = r"(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})"
ZIP = r"(\d{5}(?:-\d{4})?)"

# A bare line of two or more words that is not a card header
FULL_NAME = re.compile(
    r"^(?![^\n]*\b(?:driver|licen[cs]e|passport|national|identity|identification|card|"
    r"republic|state|dmv|department|government)\b)"
    r"[ \t]*([A-Za-z]+(?:[ \t,]+[A-Za-z]+)+)[ \t,]*$",
    re.IGNORECASE | re.MULTILINE,
)

KEY_FIELDS = ("firstName", "lastName", "dateOfBirth")
DATE_FIELDS = ("dateOfBirth", "issueDate", "expiryDate")


def labelled(labels: str, value: str) -> Pattern:
    return re.compile(rf"\b(?:{labels})\b[\s:#.]*{value}", re.IGNORECASE | re.MULTILINE)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    pattern: Pattern
    required: bool = False


@dataclass(frozen=True)
class FieldSchema:
    """Ordered field definitions for one document type"""
    document_type: DocumentType
    fields: Tuple[FieldSpec, ...]

    def __post_init__(self):
        names = [spec.name for spec in self.fields]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate field names in {self.document_type.value} schema")
        for spec in self.fields:
            if spec.pattern.groups != 1:
                raise ConfigurationError(
                    f"Pattern for {self.document_type.value}.{spec.name} must have exactly one "
                    f"capture group (has {spec.pattern.groups})"
                )

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.fields if spec.required)

    def __len__(self) -> int:
        return len(self.fields)


SCHEMAS: Dict[DocumentType, FieldSchema] = {
    DocumentType.DRIVERS_LICENSE: FieldSchema(DocumentType.DRIVERS_LICENSE, (
        FieldSpec("firstName", labelled(FIRST_NAME, WORDS), required=True),
        FieldSpec("lastName", labelled(LAST_NAME, WORDS), required=True),
        FieldSpec("fullName", FULL_NAME),
        FieldSpec("dateOfBirth", labelled(BIRTH_DATE, DATE), required=True),
        FieldSpec("licenseNumber", labelled(LICENSE_NUMBER, ALNUM)),
        FieldSpec("address", labelled(ADDRESS, LINE)),
        FieldSpec("city", labelled(CITY, WORDS)),
        FieldSpec("state", labelled(STATE, WORDS)),
        FieldSpec("zipCode", labelled(ZIP_CODE, ZIP)),
        FieldSpec("country", labelled(COUNTRY, WORDS)),
        FieldSpec("expiryDate", labelled(EXPIRY_DATE, DATE)),
    )),
    DocumentType.PASSPORT: FieldSchema(DocumentType.PASSPORT, (
        FieldSpec("firstName", labelled(FIRST_NAME, WORDS), required=True),
        FieldSpec("lastName", labelled(LAST_NAME, WORDS), required=True),
        FieldSpec("fullName", FULL_NAME),
        FieldSpec("dateOfBirth", labelled(BIRTH_DATE, DATE), required=True),
        FieldSpec("passportNumber", labelled(PASSPORT_NUMBER, ALNUM), required=True),
        FieldSpec("nationality", labelled(NATIONALITY, WORDS)),
        FieldSpec("placeOfBirth", labelled(BIRTH_PLACE, PLACE)),
        FieldSpec("issueDate", labelled(ISSUE_DATE, DATE)),
        FieldSpec("expiryDate", labelled(EXPIRY_DATE, DATE)),
    )),
    DocumentType.NATIONAL_ID: FieldSchema(DocumentType.NATIONAL_ID, (
        FieldSpec("firstName", labelled(FIRST_NAME, WORDS), required=True),
        FieldSpec("lastName", labelled(LAST_NAME, WORDS), required=True),
        FieldSpec("fullName", FULL_NAME),
        FieldSpec("dateOfBirth", labelled(BIRTH_DATE, DATE), required=True),
        FieldSpec("idNumber", labelled(ID_NUMBER, ALNUM), required=True),
        FieldSpec("address", labelled(ADDRESS, LINE)),
        FieldSpec("city", labelled(CITY, WORDS)),
        FieldSpec("state", labelled(STATE, WORDS)),
        FieldSpec("zipCode", labelled(ZIP_CODE, ZIP)),
    )),
}

DEFAULT_DOCUMENT_TYPE = DocumentType.DRIVERS_LICENSE


def parse_document_type(value: Union[DocumentType, str, None]) -> DocumentType:
    """Map a document type name onto DocumentType, falling back to drivers_license."""
    if isinstance(value, DocumentType):
        return value
    try:
        return DocumentType(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unknown document type {value!r}, using {DEFAULT_DOCUMENT_TYPE.value} schema")
        return DEFAULT_DOCUMENT_TYPE


def get_schema(document_type: Union[DocumentType, str, None]) -> FieldSchema:
    document_type = parse_document_type(document_type)
    schema = SCHEMAS.get(document_type)
    if schema is None:
        logger.warning(f"No field schema for {document_type.value}, using {DEFAULT_DOCUMENT_TYPE.value} schema")
        schema = SCHEMAS[DEFAULT_DOCUMENT_TYPE]
    return schema
