"""CommentBot - comment generation bot with chat management and a feedback loop."""

__version__ = "1.0.0"
