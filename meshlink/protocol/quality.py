"""Link quality and channel encryption classification."""

from __future__ import annotations

from .structures import EncryptionState, SignalQuality


def signal_quality(rssi: int, snr: float) -> SignalQuality:
    """Bucket a received packet's RSSI/SNR into a display tier."""
    if rssi == 0 and snr == 0:
        # Nothing heard yet.
        return SignalQuality.BAD
    if rssi >= -95 and snr >= 8:
        return SignalQuality.GOOD
    if rssi >= -110 and snr >= 2 and not (rssi <= -120 or snr <= 1):
        return SignalQuality.FAIR
    return SignalQuality.BAD


def classify_psk(psk: bytes | bytearray | None) -> EncryptionState:
    """Classify a channel pre-shared key.

    A single byte 1..10 selects one of the firmware's well-known default
    keys; 16 or 32 bytes is an AES-128/256 custom key.
    """
    if not psk:
        return EncryptionState.NONE
    if len(psk) == 1:
        return EncryptionState.DEFAULT_KEY if 1 <= psk[0] <= 10 else EncryptionState.NONE
    if len(psk) in (16, 32):
        return EncryptionState.CUSTOM_KEY
    return EncryptionState.NONE


__all__ = ["classify_psk", "signal_quality"]
