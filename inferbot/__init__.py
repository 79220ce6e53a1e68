"""Chat gateway that bills users in crypto atoms for fal.ai generations."""

__version__ = "0.1.0"
