"""reps — personal productivity backend.

This package holds the authentication and session core: passwordless
magic-link sign-in, the CLI device-authorization flow, and the
sliding-window sessions both of them issue.
"""

__version__ = "0.1.0"
