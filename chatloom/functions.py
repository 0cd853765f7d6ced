"""Static catalog of callable-function schemas offered to the model when enabled."""

import copy

CATALOG_VERSION = "2024-01"

FUNCTION_SCHEMAS: list[dict] = [
    {
        "name": "list_dir",
        "description": "List the files and directories at a path relative to the working directory.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory to list."},
            },
            "required": ["path"],
        },
    },
    {
        "name": "read_file_lines",
        "description": "Read a range of lines from a text file.",
        "parameters": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "File to read."},
                "start_line": {"type": "integer", "description": "First line, 1-based."},
                "end_line": {"type": "integer", "description": "Last line, inclusive."},
            },
            "required": ["file_path"],
        },
    },
    {
        "name": "grep",
        "description": "Search files for a regular expression and return matching lines.",
        "parameters": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regular expression."},
                "paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Files or directories to search.",
                },
            },
            "required": ["pattern", "paths"],
        },
    },
    {
        "name": "create_file",
        "description": "Create a new file with the given text content.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File to create."},
                "text": {"type": "string", "description": "Content to write."},
                "mode": {
                    "type": "string",
                    "enum": ["create", "overwrite"],
                    "description": "Fail if the file exists, or replace it.",
                },
            },
            "required": ["path", "text"],
        },
    },
]


def tool_declarations() -> list[dict]:
    """Returns the catalog in the chat completions `tools` format. Callers get their own copy."""
    return [
        {"type": "function", "function": copy.deepcopy(schema)}
        for schema in FUNCTION_SCHEMAS
    ]
