"""Core decision logic for the paper-trading engine.

This package contains pure business logic with no I/O dependencies
(no database or network access). It is shared between the live engine
loop (app/) and the replay harness (backtest/).
"""
