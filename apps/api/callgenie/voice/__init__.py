from callgenie.voice.client import RetellClient, VoiceCallClient, get_voice_client
from callgenie.voice.errors import VoiceProviderConfigError, VoiceProviderError

__all__ = [
    "RetellClient",
    "VoiceCallClient",
    "VoiceProviderConfigError",
    "VoiceProviderError",
    "get_voice_client",
]
