"""ICE building blocks: STUN/TURN URLs, STUN messages and UDP multiplexing by ufrag."""

__version__ = "0.1.0"