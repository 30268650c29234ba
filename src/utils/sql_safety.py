"""
SQL safety utilities for preventing SQL injection.

Identifiers coming from configuration and catalog metadata are always quoted
by a dialect before they reach SQL text. These helpers reject the inputs no
quoting scheme can make safe and do the escape-by-doubling step.
"""

import re

# Column type definitions for ALTER TABLE ... ADD: words, digits, spaces,
# parentheses and commas only (e.g. "NUMERIC(12, 2)", "character varying(64)")
VALID_TYPE_DEFINITION = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*(\(\s*\d+(\s*,\s*\d+)?\s*\))?[A-Za-z0-9_ ]*$")


def validate_identifier(identifier: str) -> None:
    """
    Validate a SQL identifier (table name, column name, etc.).

    Any printable character is allowed because identifiers are always quoted.

    Args:
        identifier: The identifier to validate

    Raises:
        ValueError: If the identifier is empty or contains NUL/control characters
    """
    if not identifier:
        raise ValueError("SQL identifier cannot be empty")

    for char in identifier:
        if ord(char) < 32 or ord(char) == 127:
            raise ValueError(
                f"Invalid SQL identifier: {identifier!r}. "
                "NUL and control characters are not allowed."
            )


def quote_with(identifier: str, open_quote: str, close_quote: str) -> str:
    """
    Quote an identifier, escaping the closing quote character by doubling it.

    Doubling keeps quoting injective: distinct names always produce
    distinct quoted text.

    Args:
        identifier: The identifier to quote
        open_quote: Opening quote character
        close_quote: Closing quote character

    Returns:
        Quoted identifier safe for use in SQL

    Raises:
        ValueError: If the identifier is invalid
    """
    validate_identifier(identifier)
    escaped = identifier.replace(close_quote, close_quote * 2)
    return f"{open_quote}{escaped}{close_quote}"


def validate_type_definition(type_def: str) -> None:
    """
    Validate a column type definition used in ALTER TABLE statements.

    Args:
        type_def: Type definition such as "VARCHAR(255)"

    Raises:
        ValueError: If the definition contains anything beyond a type name
            with optional size/scale
    """
    if not type_def or not VALID_TYPE_DEFINITION.match(type_def.strip()):
        raise ValueError(f"Invalid column type definition: {type_def!r}")


def validate_integer_param(value: int, param_name: str, min_value: int = 0) -> None:
    """
    Validate an integer parameter for SQL queries.

    Args:
        value: The value to validate
        param_name: Name of the parameter (for error messages)
        min_value: Minimum allowed value (default 0)

    Raises:
        ValueError: If the value is not a valid integer or below minimum
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(
            f"Invalid {param_name}: {value!r}. Must be an integer."
        )

    if value < min_value:
        raise ValueError(
            f"Invalid {param_name}: {value}. Must be >= {min_value}."
        )
