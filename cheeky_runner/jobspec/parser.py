"""
Job document decoding
YAML (and therefore JSON) text into validated pydantic models
"""

from collections.abc import Hashable
from pathlib import Path
from typing import Any, Type, TypeVar, Union

import yaml
from pydantic import BaseModel, ValidationError

from cheeky_runner.errors import JobSpecError
from cheeky_runner.models import JobSpec

ModelT = TypeVar("ModelT", bound=BaseModel)


class UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last"""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    "found unhashable key",
                    key_node.start_mark
                )
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def load_document(text: Union[str, bytes]) -> Any:
    try:
        return yaml.load(text, Loader=UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise JobSpecError(f"Invalid job document: {e}") from e


def parse_document(text: Union[str, bytes], model: Type[ModelT]) -> ModelT:
    """
    Decode a YAML/JSON document into any pydantic model

    Args:
        text: Document text
        model: Target model class

    Returns:
        Validated model instance

    Raises:
        JobSpecError: if the text is not valid YAML or does not match the model
    """
    data = load_document(text)
    if not isinstance(data, dict):
        raise JobSpecError(f"Expected a mapping for {model.__name__}, got {type(data).__name__}")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise JobSpecError(f"Invalid {model.__name__}: {e}") from e


def load_job_spec(path: Union[str, Path]) -> JobSpec:
    """Read and validate a job document from disk"""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise JobSpecError(f"Cannot read job document {path}: {e}") from e
    return parse_document(text, JobSpec)
