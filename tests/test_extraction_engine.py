import io

import numpy as np
import pytest
from PIL import Image

from conftest import DRIVERS_LICENSE_TEXT, FakeBackend, document_frame
from errors import ExtractionCancelled, ExtractionError, RecognitionError
from extraction_engine import (
    CancellationToken,
    ExtractionEngine,
    calculate_confidence,
    clean_field_value,
    detect_document_type,
    extract_fields,
    load_image,
    preprocess_image,
    validate_fields,
)
from field_schemas import SCHEMAS, get_schema
from models import DocumentType
from recognition import RecognitionOutput
from settings import PreprocessingOptions

NO_PREPROCESSING = PreprocessingOptions(
    normalize=False, denoise=False, deskew=False, contrast=1.0, brightness=0.0, grayscale=False
)


def test_drivers_license_fields_and_confidence():
    engine = ExtractionEngine(FakeBackend([RecognitionOutput(DRIVERS_LICENSE_TEXT, 0.8)]))
    result = engine.extract(document_frame(320, 240))

    assert result.document_type == DocumentType.DRIVERS_LICENSE
    assert result.fields["firstName"] == "JOHN"
    assert result.fields["lastName"] == "DOE"
    assert result.fields["dateOfBirth"] == "01/02/1990"
    assert result.raw_text == DRIVERS_LICENSE_TEXT

    total = len(SCHEMAS[DocumentType.DRIVERS_LICENSE])
    extracted = sum(1 for name in SCHEMAS[DocumentType.DRIVERS_LICENSE].field_names if result.fields.get(name))
    assert extracted == 3
    assert result.confidence == pytest.approx((0.8 + 3 / total) / 2 + 0.3)


def test_result_fields_are_immutable():
    result = ExtractionEngine(FakeBackend()).extract(document_frame(320, 240))
    with pytest.raises(TypeError):
        result.fields["firstName"] = "JANE"


@pytest.mark.parametrize("backend_confidence", [1.5, -0.2, 0.0, 1.0, float("nan"), float("inf"), 250.0])
def test_confidence_is_clamped(backend_confidence):
    engine = ExtractionEngine(FakeBackend([RecognitionOutput(DRIVERS_LICENSE_TEXT, backend_confidence)]))
    result = engine.extract(document_frame(320, 240))
    assert 0.0 <= result.confidence <= 1.0


def test_confidence_without_fields_is_half_backend_confidence():
    schema = get_schema(DocumentType.PASSPORT)
    assert calculate_confidence(0.6, {}, schema) == pytest.approx(0.3)


def test_empty_text_is_a_recognition_error():
    engine = ExtractionEngine(FakeBackend([RecognitionOutput("   \n", 0.9)]))
    with pytest.raises(RecognitionError):
        engine.extract(document_frame(320, 240))


def test_backend_exceptions_become_recognition_errors():
    engine = ExtractionEngine(FakeBackend([RuntimeError("model crashed")]))
    with pytest.raises(RecognitionError, match="model crashed"):
        engine.extract(document_frame(320, 240))


def test_progress_milestones():
    progress = []
    ExtractionEngine(FakeBackend()).extract(document_frame(320, 240), on_progress=progress.append)
    assert progress == [0.0, 0.3, 0.7, 0.9, 1.0]


def test_cancelled_before_recognition_never_calls_backend():
    backend = FakeBackend()
    token = CancellationToken()
    token.cancel()

    with pytest.raises(ExtractionCancelled):
        ExtractionEngine(backend).extract(document_frame(320, 240), cancel_token=token)
    assert backend.calls == 0


def test_cancelled_during_recognition_stops_before_field_extraction():
    token = CancellationToken()

    class CancellingBackend(FakeBackend):
        def recognize(self, image):
            output = super().recognize(image)
            token.cancel()
            return output

    progress = []
    with pytest.raises(ExtractionCancelled):
        ExtractionEngine(CancellingBackend()).extract(
            document_frame(320, 240), cancel_token=token, on_progress=progress.append
        )
    assert progress == [0.0, 0.3, 0.7]


@pytest.mark.parametrize("text, document_type", [
    ("DRIVER LICENSE", DocumentType.DRIVERS_LICENSE),
    ("Department of Motor Vehicles DMV", DocumentType.DRIVERS_LICENSE),
    ("PASSPORT\nSurname: DOE", DocumentType.PASSPORT),
    ("Passport No: X123", DocumentType.PASSPORT),
    ("Issuing authority: USA", DocumentType.PASSPORT),
    ("NATIONAL ID CARD", DocumentType.NATIONAL_ID),
    ("Citizen ID 12345", DocumentType.NATIONAL_ID),
    ("Social Security Administration", DocumentType.NATIONAL_ID),
    ("some unrelated text", DocumentType.DRIVERS_LICENSE),
    ("", DocumentType.DRIVERS_LICENSE),
])
def test_detect_document_type(text, document_type):
    assert detect_document_type(text) == document_type


def test_passport_fields():
    text = (
        "PASSPORT\n"
        "Surname: DOE\n"
        "Given Names: JANE MARIE\n"
        "Passport No: X1234567\n"
        "Nationality: CANADIAN\n"
        "Date of Birth: 15/08/1985\n"
        "Place of Birth: TORONTO\n"
        "Date of Issue: 01/01/2020\n"
        "Date of Expiry: 01/01/2030\n"
    )
    fields = extract_fields(text, DocumentType.PASSPORT)

    assert fields["lastName"] == "DOE"
    assert fields["firstName"] == "JANE MARIE"
    assert fields["passportNumber"] == "X1234567"
    assert fields["nationality"] == "CANADIAN"
    assert fields["dateOfBirth"] == "15/08/1985"
    assert fields["placeOfBirth"] == "TORONTO"
    assert fields["issueDate"] == "01/01/2020"
    assert fields["expiryDate"] == "01/01/2030"


def test_national_id_fields():
    text = (
        "NATIONAL ID\n"
        "ID No: AB-998877\n"
        "First Name: MARIA\n"
        "Last Name: GARCIA\n"
        "DOB: 3-4-1970\n"
        "Address: 12 Main St\n"
        "City: Springfield\n"
        "Zip: 12345\n"
    )
    fields = extract_fields(text, "national_id")

    assert fields["idNumber"] == "AB-998877"
    assert fields["firstName"] == "MARIA"
    assert fields["lastName"] == "GARCIA"
    assert fields["dateOfBirth"] == "3-4-1970"
    assert fields["address"] == "12 Main St"
    assert fields["city"] == "Springfield"
    assert fields["zipCode"] == "12345"


def test_full_name_is_split_when_first_and_last_are_missing():
    text = "DRIVER LICENSE\nJOHN MICHAEL DOE\nDOB: 01/02/1990\n"
    fields = extract_fields(text, DocumentType.DRIVERS_LICENSE)

    assert fields["fullName"] == "JOHN MICHAEL DOE"
    assert fields["firstName"] == "JOHN"
    assert fields["lastName"] == "MICHAEL DOE"


def test_full_name_is_not_split_when_first_name_present():
    text = "First Name: JOHN\nJANE ROE\n"
    fields = extract_fields(text, DocumentType.DRIVERS_LICENSE)

    assert fields["firstName"] == "JOHN"
    assert "lastName" not in fields


def test_unknown_document_type_falls_back_to_drivers_license_schema():
    assert get_schema("library_card") is SCHEMAS[DocumentType.DRIVERS_LICENSE]
    fields = extract_fields("Last Name: DOE", "library_card")
    assert fields == {"lastName": "DOE"}


def test_extract_fields_on_empty_text():
    assert extract_fields("", DocumentType.PASSPORT) == {}


def test_clean_field_value():
    assert clean_field_value("  JOHN   MICHAEL ,") == "JOHN MICHAEL"
    assert clean_field_value("01/02/1990") == "01/02/1990"


def test_validation_reports_missing_required_and_bad_dates():
    validation = validate_fields(
        {"firstName": "", "lastName": "Doe", "dateOfBirth": "1990-01-02"}, "drivers_license"
    )

    assert not validation.is_valid
    assert "firstName" in validation.errors
    assert "lastName" not in validation.errors
    assert "dateOfBirth" in validation.warnings
    assert "dateOfBirth" not in validation.errors


def test_validation_passes_with_all_required_fields():
    validation = validate_fields(
        {"firstName": "John", "lastName": "Doe", "dateOfBirth": "01/02/1990", "passportNumber": "X1"},
        DocumentType.PASSPORT,
    )
    assert validation.is_valid
    assert validation.errors == {}
    assert validation.warnings == {}


def test_validation_of_passport_requires_passport_number():
    validation = validate_fields({"firstName": "J", "lastName": "D", "dateOfBirth": "1/2/90"}, "passport")
    assert validation.errors == {"passportNumber": "passportNumber is required"}


def test_validation_warns_on_bad_email_and_expiry():
    validation = validate_fields(
        {"firstName": "J", "lastName": "D", "dateOfBirth": "1/2/90",
         "expiryDate": "next year", "email": "not-an-email"},
        "drivers_license",
    )
    assert validation.is_valid
    assert set(validation.warnings) == {"expiryDate", "email"}


def test_engine_validate_delegates():
    engine = ExtractionEngine(FakeBackend())
    assert engine.validate({}, "national_id").errors.keys() == {"firstName", "lastName", "dateOfBirth", "idNumber"}


def test_load_image_accepts_bytes_pil_and_arrays():
    array = document_frame(64, 48)
    buffer = io.BytesIO()
    Image.fromarray(array).save(buffer, format="PNG")

    assert np.array_equal(load_image(buffer.getvalue()), array)
    assert np.array_equal(load_image(Image.fromarray(array)), array)
    assert load_image(array.astype(np.float64)).dtype == np.uint8


@pytest.mark.parametrize("bad", [b"not an image", np.zeros((0, 0)), "path.png"])
def test_load_image_rejects_bad_input(bad):
    with pytest.raises(ExtractionError):
        load_image(bad)


def test_preprocessing_steps_can_be_disabled():
    image = document_frame(64, 48)
    assert np.array_equal(preprocess_image(image, NO_PREPROCESSING), image)


def test_preprocessing_defaults_produce_single_channel():
    processed = preprocess_image(document_frame(64, 48), PreprocessingOptions())
    assert processed.ndim == 2
    assert processed.dtype == np.uint8


def test_grayscale_only():
    options = PreprocessingOptions(normalize=False, denoise=False, deskew=False, contrast=1.0, brightness=0.0)
    processed = preprocess_image(document_frame(64, 48), options)
    assert processed.shape == (48, 64)


def test_rgba_input_is_converted():
    rgba = np.dstack([document_frame(64, 48), np.full((48, 64), 255, dtype=np.uint8)])
    assert preprocess_image(rgba, NO_PREPROCESSING).shape == (48, 64, 3)


def test_engine_passes_preprocessed_image_to_backend():
    backend = FakeBackend()
    ExtractionEngine(backend, NO_PREPROCESSING).extract(document_frame(64, 48))
    assert backend.images[0].shape == (48, 64, 3)

    ExtractionEngine(backend).extract(document_frame(64, 48))
    assert backend.images[1].ndim == 2
