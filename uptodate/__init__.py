"""
Docker container auto-update daemon.

Periodically pulls the image each running container was started from and,
when the pulled image differs from the one the container runs, replaces the
container with an identically configured one on the new image. Containers
without published ports can opt in to a health-gated rolling replacement.
"""

__version__ = "0.5.0"
