from __future__ import annotations

import json
from typing import Any

from jsonschema import validate


def read_json_file(file_path: str) -> Any:
    with open(file_path, "r", encoding="utf-8") as file:
        return json.load(file)


def read_json_config(file_path: str, schema: dict) -> dict:
    """Reads a json config file and validates it against the schema.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid json.
        jsonschema.ValidationError: If the config does not match the schema.
    """
    config = read_json_file(file_path)
    validate(config, schema)
    return config
