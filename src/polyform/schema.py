from __future__ import annotations

from copy import deepcopy
from typing import Any

import orjson
from jsonschema import Draft7Validator

from polyform.config import DEFAULT_SETTINGS, FIELD_ID_PATTERN, FIELD_TYPES, OPTION_TYPES
from polyform.errors import ConflictError, SchemaError
from polyform.field_types import is_file_like, normalize_type_tag
from polyform.file_formats import file_accept_for_field, parse_allowed_extensions
from polyform.utils import generate_field_id

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "fields": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "type": {"type": "string"},
                    "label": {"type": "string"},
                    "name": {"type": ["string", "null"]},
                    "required": {"type": "boolean"},
                    "options": {"type": "array", "items": {"type": ["string", "number"]}},
                    "min": {"type": ["number", "string", "null"]},
                    "max": {"type": ["number", "string", "null"]},
                    "min_length": {"type": ["integer", "string", "null"]},
                    "max_length": {"type": ["integer", "string", "null"]},
                    "max_size_mb": {"type": ["number", "string", "null"]},
                    "crop_allowed": {"type": "boolean"},
                },
                "required": ["type"],
            },
        },
        "settings": {
            "type": "object",
            "properties": {
                "submit_button_text": {"type": "string"},
                "success_message": {"type": "string"},
                "allow_multiple_submissions": {"type": "boolean"},
            },
        },
    },
    "required": ["fields"],
}

_CONFIG_VALIDATOR = Draft7Validator(CONFIG_SCHEMA)


def default_config() -> dict[str, Any]:
    return {"fields": [], "settings": dict(DEFAULT_SETTINGS)}


def _optional_float(raw: Any, loc: str, name: str, errors: list[str]) -> float | None:
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        errors.append(f"{loc}: {name} must be a number")
        return None


def _optional_int(raw: Any, loc: str, name: str, errors: list[str]) -> int | None:
    if raw in (None, ""):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        errors.append(f"{loc}: {name} must be an integer")
        return None
    if value < 0:
        errors.append(f"{loc}: {name} must not be negative")
        return None
    return value


def normalize_field(
    raw: dict[str, Any],
    loc: str,
    seen_ids: set[str],
    errors: list[str],
    assign_id: bool = True,
) -> dict[str, Any]:
    field_id = str(raw.get("id") or "").strip()
    if not field_id and assign_id:
        field_id = generate_field_id(seen_ids)
    if not field_id:
        errors.append(f"{loc}: id is required")
    elif not FIELD_ID_PATTERN.match(field_id):
        errors.append(f"{loc}: invalid field id ({field_id})")
    elif field_id in seen_ids:
        errors.append(f"{loc}: duplicate field id ({field_id})")
    seen_ids.add(field_id)

    field_type = normalize_type_tag(raw.get("type"))
    if field_type not in FIELD_TYPES:
        errors.append(f"{loc}: unknown field type ({raw.get('type')})")

    label = str(raw.get("label") or "").strip()
    if not label:
        errors.append(f"{loc}: label is required")

    field: dict[str, Any] = {
        "id": field_id,
        "type": field_type,
        "label": label,
        "required": bool(raw.get("required")),
    }
    name = str(raw.get("name") or "").strip()
    if name:
        field["name"] = name
    description = str(raw.get("description") or "").strip()
    if description:
        field["description"] = description

    if field_type in {"text", "email", "number", "aadhar"}:
        field["placeholder"] = str(raw.get("placeholder") or "").strip()

    if field_type == "text":
        field["min_length"] = _optional_int(raw.get("min_length"), loc, "min_length", errors)
        field["max_length"] = _optional_int(raw.get("max_length"), loc, "max_length", errors)
        if (
            field["min_length"] is not None
            and field["max_length"] is not None
            and field["min_length"] > field["max_length"]
        ):
            errors.append(f"{loc}: min_length exceeds max_length")

    if field_type == "number":
        field["min"] = _optional_float(raw.get("min"), loc, "min", errors)
        field["max"] = _optional_float(raw.get("max"), loc, "max", errors)
        if field["min"] is not None and field["max"] is not None and field["min"] > field["max"]:
            errors.append(f"{loc}: min exceeds max")

    if field_type in OPTION_TYPES:
        options: list[str] = []
        for option in raw.get("options") or []:
            text = str(option).strip()
            if text and text not in options:
                options.append(text)
        if not options:
            errors.append(f"{loc}: options are required for {field_type} fields")
        field["options"] = options

    if field_type == "file":
        allowed, invalid = parse_allowed_extensions(raw.get("allowed_extensions"))
        if invalid:
            errors.append(f"{loc}: invalid allowed extensions ({', '.join(invalid[:3])})")
        field["allowed_extensions"] = allowed

    if field_type in {"file", "photo", "signature"}:
        max_size_mb = _optional_float(raw.get("max_size_mb"), loc, "max_size_mb", errors)
        if max_size_mb is not None and max_size_mb <= 0:
            errors.append(f"{loc}: max_size_mb must be positive")
        field["max_size_mb"] = max_size_mb

    if field_type in {"photo", "signature"}:
        field["aspect_ratio"] = str(raw.get("aspect_ratio") or "").strip()
        field["crop_allowed"] = bool(raw.get("crop_allowed", True))

    return field


def parse_fields(raw_fields: Any, assign_ids: bool = True) -> tuple[list[dict[str, Any]], list[str]]:
    if not isinstance(raw_fields, list):
        return [], ["fields must be a list"]
    errors: list[str] = []
    seen_ids: set[str] = set()
    fields: list[dict[str, Any]] = []
    for index, raw in enumerate(raw_fields, start=1):
        loc = f"field {index}"
        if not isinstance(raw, dict):
            errors.append(f"{loc}: must be an object")
            continue
        try:
            fields.append(normalize_field(raw, loc, seen_ids, errors, assign_id=assign_ids))
        except ConflictError as exc:
            errors.append(f"{loc}: {exc}")
    return fields, errors


def normalize_settings(raw: Any) -> dict[str, Any]:
    settings = dict(DEFAULT_SETTINGS)
    if isinstance(raw, dict):
        for key in DEFAULT_SETTINGS:
            if key in raw and raw[key] is not None:
                settings[key] = raw[key]
    settings["submit_button_text"] = str(settings["submit_button_text"]).strip() or DEFAULT_SETTINGS["submit_button_text"]
    settings["success_message"] = str(settings["success_message"]).strip() or DEFAULT_SETTINGS["success_message"]
    settings["allow_multiple_submissions"] = bool(settings["allow_multiple_submissions"])
    return settings


def normalize_config(config: Any, assign_ids: bool = True) -> dict[str, Any]:
    if not isinstance(config, dict):
        raise SchemaError(["config must be an object"])
    structural = sorted(_CONFIG_VALIDATOR.iter_errors(config), key=lambda err: list(err.path))
    if structural:
        raise SchemaError(
            [
                f"{'/'.join(str(part) for part in error.path) or 'config'}: {error.message}"
                for error in structural
            ]
        )
    fields, errors = parse_fields(config.get("fields"), assign_ids=assign_ids)
    if errors:
        raise SchemaError(errors)
    return {"fields": fields, "settings": normalize_settings(config.get("settings"))}


def encode_config(config: dict[str, Any]) -> str:
    return orjson.dumps(config).decode("utf-8")


def decode_config(payload: str | bytes) -> dict[str, Any]:
    try:
        raw = orjson.loads(payload) if payload else default_config()
    except orjson.JSONDecodeError:
        raise SchemaError(["config is not valid JSON"]) from None
    return normalize_config(raw, assign_ids=False)


def form_fields(form: dict[str, Any]) -> list[dict[str, Any]]:
    config = form.get("config") or {}
    fields = config.get("fields") if isinstance(config, dict) else None
    return deepcopy(fields) if isinstance(fields, list) else []


def public_config(form: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": form["id"],
        "title": form.get("title", ""),
        "description": form.get("description", ""),
        "share_token": form.get("share_token", ""),
        "fields": [
            {**field, "accept": file_accept_for_field(field)} if is_file_like(field) else field
            for field in form_fields(form)
        ],
        "settings": normalize_settings((form.get("config") or {}).get("settings")),
    }
