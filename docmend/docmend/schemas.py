from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .changes import request_error

Query = Dict[str, Any]

M = TypeVar("M", bound=BaseModel)


class IdPathStepV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    field: str
    id: Optional[Any] = None


class FieldQueryStepV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    field: str
    new_value: Optional[Any] = None
    test_array_field: Optional[str] = None
    test_array_value: Optional[Any] = None
    object_id: bool = False

    @model_validator(mode="after")
    def validate_test(self) -> "FieldQueryStepV1":
        if self.new_value is not None and self.test_array_field is None:
            raise ValueError("a step with new_value requires test_array_field")
        return self


class MoveV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    from_field: str
    to_field: str


class ChangeRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    changes: Union[Dict[str, Any], List[Any]]


class PushRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    field: str
    value: Any
    id_values: Union[Literal["object"], List[str], None] = None


class AddIdsRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    field: str
    id_values: List[Any]


class InjectRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    field: str
    field_ids: Union[str, List[Any]] = ""
    data: List[Any]


class ArrayFieldRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    array_field: str
    unique_field: Optional[str] = None


class DeleteRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    fields: Optional[List[str]] = None
    by_id_path: Optional[List[IdPathStepV1]] = None
    clear_array: Optional[str] = None
    whole: bool = False

    @model_validator(mode="after")
    def validate_one_target(self) -> "DeleteRequestV1":
        present = sum(
            1
            for selected in (self.fields, self.by_id_path, self.clear_array, self.whole or None)
            if selected
        )
        if present > 1:
            raise ValueError("delete takes exactly one of fields, by_id_path, clear_array, whole")
        return self


class TranslateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    moves: List[MoveV1]


class ModifyArrayRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    field_query: List[FieldQueryStepV1] = Field(default_factory=list)


class StatusRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    path: str
    code: Any


class GetRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    select: Optional[List[str]] = None


class UniqueRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    query: Optional[Query] = None
    selection: Optional[str] = None


class CreateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    documents: Union[Dict[str, Any], List[Dict[str, Any]]]


class TransferRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")
    from_query: Optional[Query] = None
    link_field: str
    from_field: str
    to_field: str


def parse_request(model: Type[M], payload: Any) -> M:
    """Validate a decoded request payload, mapping pydantic errors onto the taxonomy."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise request_error(exc) from exc
