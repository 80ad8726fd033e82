"""MeshCore wire format decoding."""

from meshdots.meshcore.decoder import decode_advert, decode_advert_frame, decode_frame, round_half_away

__all__ = ["decode_advert", "decode_advert_frame", "decode_frame", "round_half_away"]
