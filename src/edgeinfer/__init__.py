"""
edgeinfer - On-device text generation sessions

Local inference session management over llama.cpp GGUF models.

Core components:
- inference: session lifecycle, generation loop, streaming with cancellation
- inference.sampling: greedy (default) and top-p token selection
- conversation: role-tagged turn history, prompt rendering, bounded trimming
- discovery: Ollama blob scanning, GGUF header sniffing, compatibility probing
- profiles: recommended context/generation settings per device class
"""

__version__ = "0.1.0"
