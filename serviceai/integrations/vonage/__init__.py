from serviceai.integrations.vonage.client import VonageClient

__all__ = ["VonageClient"]
