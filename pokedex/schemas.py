# pokedex/schemas.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pokedex.errors import ValidationError

TModel = TypeVar("TModel", bound=BaseModel)

# Largest value an Integer column holds on every backend (int4)
MAX_DB_INT = 2**31 - 1


# ---- Shared error model (for docs / consistency) ----
class ErrorResponse(BaseModel):
    error: str
    fields: dict[str, list[str]] | None = None


# ---- Write payloads ----
class PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PokemonStatIn(PayloadBase):
    id: int | None = Field(default=None, gt=0, le=MAX_DB_INT)
    base_stat: int = Field(ge=0, le=MAX_DB_INT)
    effort: int = Field(ge=0, le=MAX_DB_INT)
    stat_id: int = Field(gt=0, le=MAX_DB_INT)


class PokemonTypeIn(PayloadBase):
    id: int | None = Field(default=None, gt=0, le=MAX_DB_INT)
    slot: int = Field(ge=1, le=MAX_DB_INT)
    type_id: int = Field(gt=0, le=MAX_DB_INT)


def _strip_required_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        raise ValueError("must not be blank")
    return normalized


class PokemonCreate(PayloadBase):
    name: str
    height: int = Field(gt=0, le=MAX_DB_INT)
    weight: int = Field(gt=0, le=MAX_DB_INT)
    base_experience: int = Field(ge=0, le=MAX_DB_INT)
    image_url: str
    stats: list[PokemonStatIn] = Field(default_factory=list)
    types: list[PokemonTypeIn] = Field(default_factory=list)

    @field_validator("name", "image_url")
    @classmethod
    def validate_text(cls, value: str) -> str:
        return _strip_required_text(value)

    @model_validator(mode="after")
    def validate_new_children(self) -> PokemonCreate:
        if any(stat.id is not None for stat in self.stats) or any(
            entry.id is not None for entry in self.types
        ):
            raise ValueError("child ids are assigned by storage and must not be sent on create")
        return self


class PokemonUpdate(PayloadBase):
    """
    Partial update. Only fields present in the payload are applied.

    stats / types, when present, replace the child collection: entries
    with an id update that child, entries without one are inserted.
    """

    name: str | None = None
    height: int | None = Field(default=None, gt=0, le=MAX_DB_INT)
    weight: int | None = Field(default=None, gt=0, le=MAX_DB_INT)
    base_experience: int | None = Field(default=None, ge=0, le=MAX_DB_INT)
    image_url: str | None = None
    stats: list[PokemonStatIn] | None = None
    types: list[PokemonTypeIn] | None = None

    @field_validator("name", "image_url")
    @classmethod
    def validate_text(cls, value: str | None) -> str | None:
        return _strip_required_text(value)

    @model_validator(mode="after")
    def reject_explicit_nulls(self) -> PokemonUpdate:
        nulled = sorted(
            field for field in self.model_fields_set if getattr(self, field) is None
        )
        if nulled:
            raise ValueError(f"fields cannot be null: {', '.join(nulled)}")
        return self

    def scalar_changes(self) -> dict[str, Any]:
        return self.model_dump(include=self.model_fields_set - {"stats", "types"})


class ReferenceCreate(PayloadBase):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _strip_required_text(value).lower()


# ---- Read models ----
class ReadBase(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class StatInfoRead(ReadBase):
    id: int
    name: str


class TypeInfoRead(ReadBase):
    id: int
    name: str


class PokemonStatRead(ReadBase):
    id: int
    base_stat: int
    effort: int
    stat_id: int
    pokemon_id: int | None
    stat: StatInfoRead


class PokemonTypeRead(ReadBase):
    id: int
    slot: int
    pokemon_id: int
    type_id: int
    type: TypeInfoRead


class PokemonRead(ReadBase):
    id: int
    name: str
    height: int
    weight: int
    base_experience: int
    image_url: str
    stats: tuple[PokemonStatRead, ...] = ()
    types: tuple[PokemonTypeRead, ...] = ()


def parse_payload(model_cls: type[TModel], payload: TModel | Mapping[str, Any]) -> TModel:
    """
    Validate a candidate payload before anything touches storage.

    Raises pokedex.errors.ValidationError with field-level messages.
    """
    if isinstance(payload, model_cls):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError({"payload": ["expected an object"]})
    try:
        return model_cls.model_validate(dict(payload))
    except pydantic.ValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc
