"""Application – saga orchestration use cases (framework-agnostic)."""
