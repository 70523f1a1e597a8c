"""Real-time messaging core for the job marketplace backend."""

__version__ = "0.1.0"
