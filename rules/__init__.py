"""
Rules package initialization.

Submodules are imported directly where needed
(e.g. `from rules.rules_processor import RuleProcessor`).
"""
