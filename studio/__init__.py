"""Studio: sign in with an OAuth provider and generate images, video and audio from a prompt."""

__version__ = "0.1.0"
