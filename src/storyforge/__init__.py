"""StoryForge - turn a short story concept into an illustrated children's book."""

__version__ = "0.1.0"
