from importlib import import_module

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import model modules so their tables register with Base.metadata.
# These imports must come before any Base.metadata.create_all(...)
_model_modules = [
    "completion_event",
    "imported_aggregate",
    "forecast_run",
]


def load_models() -> None:
    for _mod in _model_modules:
        import_module(f"healthcast.models.{_mod}")
