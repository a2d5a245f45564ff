"""Replay live Uniswap v2 style Swap events on a local Anvil fork.

See :py:func:`fork_forwarder.forwarder.start`.
"""
