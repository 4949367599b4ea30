"""
ISPCore - Resultado de búsqueda en repositorios
Found(valor) | Missing: el repositorio nunca decide si "no existe" es un
error; lo decide quien llama según la operación.
"""
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from ispcore.errors import NotFoundError

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T

    def __bool__(self):
        return True


class _Missing:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "Missing"


Missing = _Missing()

Lookup = Union[Found[T], _Missing]


def found_or_none(value) -> "Lookup":
    return Found(value) if value is not None else Missing


def require(lookup: "Lookup", what: str, **context) -> T:
    """Extrae el valor o lanza not_found con el contexto dado."""
    if isinstance(lookup, Found):
        return lookup.value
    raise NotFoundError(f"{what} no encontrado").annotate("repository", entity=what, **context)
