"""
WhatIfInvested Coinbase Handlers - charge creation and exchange proxy compute units.
"""
