"""Keep a BIRD protocol in step with this node's Tailscale primary-router status."""

__version__ = "1.0.0"
