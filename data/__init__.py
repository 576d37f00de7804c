"""
Data package initialization.

Submodules are imported directly where needed
(e.g. `from data.data_manager import DBManager`).
"""
