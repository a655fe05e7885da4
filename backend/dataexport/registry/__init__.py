from dataexport.registry.loader import (
    Answer,
    Question,
    RegistryLoader,
    SchemaDescriptor,
    SchemaRegistry,
)

__all__ = [
    "Answer",
    "Question",
    "RegistryLoader",
    "SchemaDescriptor",
    "SchemaRegistry",
]
