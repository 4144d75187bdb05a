"""x402guard: payment policy and compliance engine for x402 agent payments."""

__version__ = "0.4.0"
