from whatsfordinner.llm.client import OpenAIDinnerClient

__all__ = ["OpenAIDinnerClient"]
