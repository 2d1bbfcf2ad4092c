"""
mixer - CoinJoin coordinator

Builds the joint PSBT from the coordinator wallet and the participants'
foreign inputs, then drives signing, merging and finalization.
"""

__version__ = "0.3.0"
