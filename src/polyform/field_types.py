from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable

from polyform.config import FIELD_TYPE_ALIASES
from polyform.errors import FieldError, SchemaError
from polyform.file_formats import (
    BLOCKED_EXTENSIONS,
    GENERIC_MIME_TYPES,
    IMAGE_MIME_TYPES,
    MB,
    allowed_extensions_for,
    allowed_mime_types,
    file_extension,
    guess_content_type,
    max_size_bytes,
)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
AADHAR_STRIP_PATTERN = re.compile(r"[\s\-]+")
AADHAR_REPEATED_PATTERN = re.compile(r"^(\d)\1{11}$")

Validator = Callable[[dict[str, Any], Any], Any]


@dataclass(frozen=True)
class FieldType:
    tag: str
    validate: Validator
    is_file_like: bool = False


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def field_label(field: dict[str, Any]) -> str:
    return str(field.get("label") or field.get("name") or field.get("id") or "")


def _fail(field: dict[str, Any], message: str) -> FieldError:
    return FieldError(str(field.get("id", "")), message)


def _require(field: dict[str, Any], value: Any) -> bool:
    """必須チェック。値が空なら False を返す（任意項目はそのまま通す）。"""
    if is_empty(value):
        if field.get("required"):
            raise _fail(field, f"{field_label(field)} is required.")
        return False
    return True


def _scalar(field: dict[str, Any], value: Any) -> str:
    if isinstance(value, (list, tuple)):
        if len(value) != 1:
            raise _fail(field, f"{field_label(field)} accepts a single value.")
        value = value[0]
    return str(value).strip()


def validate_text(field: dict[str, Any], value: Any) -> Any:
    if not _require(field, value):
        return None
    text = _scalar(field, value)
    min_length = field.get("min_length")
    max_length = field.get("max_length")
    if min_length is not None and len(text) < int(min_length):
        raise _fail(field, f"Minimum length is {int(min_length)} characters.")
    if max_length is not None and len(text) > int(max_length):
        raise _fail(field, f"Maximum length is {int(max_length)} characters.")
    return text


def validate_email(field: dict[str, Any], value: Any) -> Any:
    if not _require(field, value):
        return None
    text = _scalar(field, value)
    if not EMAIL_PATTERN.match(text):
        raise _fail(field, "Please enter a valid email address.")
    return text.lower()


def _format_bound(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def validate_number(field: dict[str, Any], value: Any) -> Any:
    if not _require(field, value):
        return None
    if isinstance(value, bool):
        raise _fail(field, "Please enter a valid number.")
    try:
        number = float(_scalar(field, value))
    except ValueError:
        raise _fail(field, "Please enter a valid number.") from None
    if number != number or number in (float("inf"), float("-inf")):
        raise _fail(field, "Please enter a valid number.")
    minimum = field.get("min")
    maximum = field.get("max")
    if minimum is not None and number < float(minimum):
        raise _fail(field, f"Value must be at least {_format_bound(float(minimum))}.")
    if maximum is not None and number > float(maximum):
        raise _fail(field, f"Value must be no more than {_format_bound(float(maximum))}.")
    return number


def clean_aadhar(value: Any) -> str:
    return AADHAR_STRIP_PATTERN.sub("", str(value or ""))


def format_aadhar(value: Any) -> str:
    clean = clean_aadhar(value)
    if len(clean) == 12:
        return f"{clean[:4]} {clean[4:8]} {clean[8:]}"
    return str(value or "")


def mask_aadhar(value: Any) -> str:
    clean = clean_aadhar(value)
    if len(clean) == 12:
        return f"XXXX XXXX {clean[8:]}"
    return str(value or "")


def validate_aadhar(field: dict[str, Any], value: Any) -> Any:
    if not _require(field, value):
        return None
    clean = clean_aadhar(_scalar(field, value))
    if not clean.isdigit() or not clean.isascii():
        raise _fail(field, "Aadhar number must contain only digits.")
    if len(clean) != 12:
        raise _fail(field, "Aadhar number must be exactly 12 digits.")
    if AADHAR_REPEATED_PATTERN.match(clean):
        raise _fail(field, "Aadhar number cannot have all same digits.")
    if clean[0] in {"0", "1"}:
        raise _fail(field, "Aadhar number cannot start with 0 or 1.")
    return clean


def validate_choice(field: dict[str, Any], value: Any) -> Any:
    if not _require(field, value):
        return None
    choice = _scalar(field, value)
    if choice not in [str(option) for option in field.get("options") or []]:
        raise _fail(field, f"Please select a valid option for {field_label(field)}.")
    return choice


def validate_checkbox(field: dict[str, Any], value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        raw_items = [str(item).strip() for item in value if not is_empty(item)]
    elif is_empty(value):
        raw_items = []
    else:
        raw_items = [str(value).strip()]
    if not raw_items:
        if field.get("required"):
            raise _fail(field, f"Please select at least one option for {field_label(field)}.")
        return []
    options = [str(option) for option in field.get("options") or []]
    selected: list[str] = []
    for item in raw_items:
        if item in options and item not in selected:
            selected.append(item)
    if not selected:
        raise _fail(field, "Please select valid options.")
    return selected


def validate_upload(field: dict[str, Any], value: Any) -> Any:
    """ファイル系フィールドはアップロード情報（filename/size/content_type）を検証する。"""
    if not _require(field, value):
        return None
    if not isinstance(value, dict):
        raise _fail(field, f"{field_label(field)} must be an uploaded file.")
    filename = str(value.get("filename") or "")
    size = int(value.get("size") or 0)
    content_type = guess_content_type(filename, value.get("content_type"))
    limit = max_size_bytes(field)
    if size > limit:
        raise _fail(
            field,
            f"File size exceeds the maximum allowed size of {_format_bound(limit / MB)}MB.",
        )
    extension = file_extension(filename)
    if extension in BLOCKED_EXTENSIONS:
        raise _fail(field, "File type not allowed for security reasons.")
    extensions = allowed_extensions_for(field)
    if extension not in extensions:
        raise _fail(field, f"File type not supported. Please upload: {', '.join(extensions)}")
    if field.get("type") in {"photo", "signature"}:
        if content_type not in IMAGE_MIME_TYPES:
            raise _fail(field, f"{field_label(field)} must be an image.")
    elif content_type not in GENERIC_MIME_TYPES:
        # 対応表にない拡張子は拡張子のみで判定する
        expected = allowed_mime_types([extension])
        if expected and content_type not in expected:
            raise _fail(field, f"File type not supported. Please upload: {', '.join(extensions)}")
    return {**value, "content_type": content_type}


FIELD_TYPE_REGISTRY: dict[str, FieldType] = {
    "text": FieldType("text", validate_text),
    "email": FieldType("email", validate_email),
    "number": FieldType("number", validate_number),
    "aadhar": FieldType("aadhar", validate_aadhar),
    "select": FieldType("select", validate_choice),
    "radio": FieldType("radio", validate_choice),
    "checkbox": FieldType("checkbox", validate_checkbox),
    "file": FieldType("file", validate_upload, is_file_like=True),
    "photo": FieldType("photo", validate_upload, is_file_like=True),
    "signature": FieldType("signature", validate_upload, is_file_like=True),
}


def normalize_type_tag(tag: Any) -> str:
    text = str(tag or "").strip().lower()
    return FIELD_TYPE_ALIASES.get(text, text)


def get_field_type(tag: Any) -> FieldType:
    normalized = normalize_type_tag(tag)
    field_type = FIELD_TYPE_REGISTRY.get(normalized)
    if field_type is None:
        raise SchemaError([f"Unknown field type: {tag}"])
    return field_type


def is_file_like(field: dict[str, Any]) -> bool:
    field_type = FIELD_TYPE_REGISTRY.get(normalize_type_tag(field.get("type")))
    return bool(field_type and field_type.is_file_like)


def validate_value(field: dict[str, Any], value: Any) -> Any:
    return get_field_type(field.get("type")).validate(field, value)


def validate_fields(
    fields: list[dict[str, Any]], raw_by_id: dict[str, Any]
) -> tuple[dict[str, Any], list[FieldError]]:
    normalized: dict[str, Any] = {}
    errors: list[FieldError] = []
    for field in fields:
        field_id = str(field.get("id", ""))
        try:
            value = validate_value(field, raw_by_id.get(field_id))
        except FieldError as error:
            errors.append(error)
            continue
        except SchemaError as error:
            errors.append(FieldError(field_id, str(error)))
            continue
        if not is_empty(value):
            normalized[field_id] = value
    return normalized, errors


def validate_submission(
    fields: list[dict[str, Any]],
    values: dict[str, Any],
    uploads: dict[str, Any] | None = None,
) -> tuple[dict[str, Any], list[FieldError]]:
    """値は values、ファイル系フィールドは uploads（どちらも field id キー）から取り出して検証する。"""
    uploads = uploads or {}
    raw_by_id: dict[str, Any] = {}
    for field in fields:
        field_id = str(field.get("id", ""))
        source = uploads if is_file_like(field) else values
        raw_by_id[field_id] = source.get(field_id)
    return validate_fields(fields, raw_by_id)
