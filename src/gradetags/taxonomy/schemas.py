"""
Expected shapes of text-generation replies.

The top level is validated strictly (a reply without the expected list is
unusable); individual entries are validated one by one so that a single
malformed entry is dropped instead of failing the whole reply.
"""

from typing import Any, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from gradetags.exceptions import ModelOutputError

EntryT = TypeVar("EntryT", bound=BaseModel)


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TagEntry(_Lenient):
    """One clustered tag; ``tag`` is accepted as an alias of ``label``."""

    label: Any = None
    tag: Any = None
    count: Any = None
    examples: Any = None


class TagClusteringReply(_Lenient):
    tags: list[Any]


class MergeGroupEntry(_Lenient):
    canonical: Any = None
    members: Any = None


class DictionaryMergeReply(_Lenient):
    groups: list[Any]


class AbilityEntry(_Lenient):
    label: Any = None


class AbilityMappingEntry(_Lenient):
    tag: Any = None
    ability: Any = None
    confidence: Any = None


class AbilityMappingReply(_Lenient):
    abilities: list[Any] = []
    mappings: list[Any]


ReplyT = TypeVar("ReplyT", bound=BaseModel)


def parse_reply(payload: dict, reply_model: Type[ReplyT]) -> ReplyT:
    """
    Validate the top-level shape of a parsed reply.

    Raises:
        ModelOutputError: If the reply does not match ``reply_model``
    """
    try:
        return reply_model.model_validate(payload)
    except ValidationError as e:
        raise ModelOutputError(
            f"unexpected {reply_model.__name__} shape: {e.error_count()} error(s)"
        ) from e


def parse_entries(items: list[Any], entry_model: Type[EntryT]) -> list[EntryT]:
    """Validate entries individually, dropping the ones that are not objects."""
    entries: list[EntryT] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            entries.append(entry_model.model_validate(item))
        except ValidationError:
            continue
    return entries
