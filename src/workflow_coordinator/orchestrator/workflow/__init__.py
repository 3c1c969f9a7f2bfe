"""Workflow domain concepts.

This package holds:
- Templates (ordered stage lists with rollback strategies)
- Named validation rules run before a stage is left
- The persisted workflow state machine
- The stage-action contract and the runner that drives it
"""

__all__: list[str] = []
