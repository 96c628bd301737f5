"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, create_indexes
from .definition_repo import DefinitionRepository
from .instance_repo import InstanceRepository
from .binding_repo import BindingRepository

__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "DefinitionRepository",
    "InstanceRepository",
    "BindingRepository",
]
