"""
End-to-end order scenarios against simulated brokers.

Run with: pytest tests/e2e/ -v -m e2e
"""
