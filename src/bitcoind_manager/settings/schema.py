"""Per-version validation models built from the materialized settings catalog.

One pydantic model is generated per concrete version. Unknown keys are
allowed through (``extra="allow"``) so a record that is mid-way through a
version switch does not fail validation; the settings manager filters them
out before anything is persisted.
"""

from collections.abc import Mapping
from functools import lru_cache
from typing import Annotated, Any, Literal, Union, assert_never

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    ValidationError,
    create_model,
)

from ..errors import SettingsValidationError
from .metadata import MultiOption, NumberOption, Option, SelectOption, ToggleOption, materialize
from .versions import resolve_version


def _label(option: Option) -> str:
    return option.native_keys[0]


def _number_checker(option: NumberOption):
    """Integer and bound checks with bitcoind-flavoured messages."""
    unit = option.unit or ""
    name = _label(option)

    def check(value: int | float) -> int | float:
        if option.integer_only:
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError(f"{option.label} must be an integer")
                value = int(value)
        if option.min is not None and value < option.min:
            raise ValueError(f"Minimum {name} is {option.min}{unit}")
        if option.max is not None and value > option.max:
            raise ValueError(f"Maximum {name} is {option.max}{unit}")
        return value

    return check


def _field_for(option: Option) -> tuple[Any, Any]:
    """Return a (type, default) pair usable with ``create_model``."""
    match option:
        case NumberOption():
            return (Annotated[Union[StrictInt, StrictFloat], AfterValidator(_number_checker(option))], ...)
        case ToggleOption():
            return (StrictBool, ...)
        case SelectOption():
            return (Literal[tuple(c.value for c in option.options)], ...)
        case MultiOption():
            item = Literal[tuple(c.value for c in option.options)]
            if option.require_at_least_one:
                return (Annotated[list[item], Field(min_length=1)], ...)
            return (list[item], ...)
        case _:
            assert_never(option)


def build_settings_model(metadata: Mapping[str, Option], name: str = "SettingsRecord") -> type[BaseModel]:
    """Create a validation model with one required field per materialized option."""
    fields = {key: _field_for(option) for key, option in metadata.items()}
    return create_model(
        name,
        __config__=ConfigDict(extra="allow"),
        **fields,
    )


@lru_cache(maxsize=None)
def _model_for_concrete_version(version: str) -> type[BaseModel]:
    return build_settings_model(materialize(version), name=f"Settings_{version.replace('.', '_')}")


def schema_for_version(selected: str | None) -> type[BaseModel]:
    """Validation model for a version selector ('latest' or a concrete version)."""
    return _model_for_concrete_version(resolve_version(selected))


def validate_settings(data: Mapping[str, Any], selected: str | None) -> dict[str, Any]:
    """Validate a settings record against its version's schema.

    Returns:
        Plain dict with validated values; unknown keys are passed through.

    Raises:
        SettingsValidationError: When any field fails validation.
    """
    version = resolve_version(selected)
    model = _model_for_concrete_version(version)
    try:
        validated = model.model_validate(dict(data))
    except ValidationError as e:
        raise SettingsValidationError(version, e.errors(include_url=False)) from e
    return validated.model_dump()
