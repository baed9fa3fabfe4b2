"""Group chat message streams into conversational units, stacks and segments."""

__version__ = "0.1.0"
