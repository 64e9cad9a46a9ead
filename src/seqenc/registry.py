"""
Registry for recurrent cells and input networks. Both self-register via decorators.

To add a cell: create `cells/my_cell.py` with @register_cell("NAME", num_states_per_layer=...) on the class.
To add an input network: create `inputs/my_input.py` with @register_input("name", description="...").
"""
import importlib
import pkgutil
from typing import Any

# name -> {cls, num_states_per_layer, description}
CELLS: dict[str, dict[str, Any]] = {}
# name -> {cls, description, constructor_params}
INPUTS: dict[str, dict[str, Any]] = {}

_cells_loaded = False
_inputs_loaded = False


def _load_package(pkg, prefix: str):
    for importer, modname, _ in pkgutil.iter_modules(pkg.__path__, prefix=prefix):
        if "base" not in modname:  # skip base.py
            importlib.import_module(modname)


def _load_cells():
    global _cells_loaded
    if _cells_loaded:
        return
    import seqenc.cells as cells_pkg
    _load_package(cells_pkg, "seqenc.cells.")
    _cells_loaded = True


def _load_inputs():
    global _inputs_loaded
    if _inputs_loaded:
        return
    import seqenc.inputs as inputs_pkg
    _load_package(inputs_pkg, "seqenc.inputs.")
    _inputs_loaded = True


def register_cell(name: str, *, num_states_per_layer: int, description: str = ""):
    """Register a cell class. Use as @register_cell('LSTM', num_states_per_layer=2)."""

    def decorator(cls):
        CELLS[name] = {
            "cls": cls,
            "num_states_per_layer": num_states_per_layer,
            "description": description,
        }
        return cls

    return decorator


def register_input(name: str, *, description: str = "", constructor_params: list[str] | None = None):
    """Register an input network class. Use as @register_input('embedding', description='...')."""

    def decorator(cls):
        INPUTS[name] = {
            "cls": cls,
            "description": description,
            "constructor_params": constructor_params or [],
        }
        return cls

    return decorator


def get_cell(name: str):
    """Get cell class and metadata. Loads cells on first call."""
    _load_cells()
    return CELLS.get(name)


def get_input(name: str):
    """Get input network class and metadata. Loads input networks on first call."""
    _load_inputs()
    return INPUTS.get(name)


def all_cell_names() -> list[str]:
    _load_cells()
    return list(CELLS.keys())


def all_input_names() -> list[str]:
    _load_inputs()
    return list(INPUTS.keys())
