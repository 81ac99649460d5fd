"""Core module - session state, chat lifecycle, feedback and orchestration."""
