"""Chain Forge.

Local development orchestrator for Bitcoin regtest and Solana test validator instances.
"""
__version__ = "0.1.0"
