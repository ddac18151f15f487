from pydantic import BaseModel, ConfigDict


class RetrievalBaseModel(BaseModel):
    model_config = ConfigDict(
        protected_namespaces=(),
        arbitrary_types_allowed=True,
    )


class FrozenModel(RetrievalBaseModel):
    """Immutable record; derive changed copies with ``model_copy(update=...)``."""

    model_config = ConfigDict(
        protected_namespaces=(),
        arbitrary_types_allowed=True,
        frozen=True,
    )
