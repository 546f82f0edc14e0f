"""
Speech synthesis components.

    - providers/: online (OpenAI) and offline (Piper) providers
    - storage.py: content-addressed disk cache and TTL cleanup
    - fanout.py: stream tee into the cache
    - tokens.py: short-lived playback tokens
"""
