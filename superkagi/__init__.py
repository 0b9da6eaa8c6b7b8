"""SuperKagi: streaming chat over local, OpenRouter and NanoGPT models with Kagi search tools."""

__version__ = "0.1.0"
