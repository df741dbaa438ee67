"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending protocol.

The tests are organized by invariant:
1. test_protocol_atomicity.py - All-or-nothing operations and reentrancy
2. test_custody.py - Escrow, double entry and replay under random operation sequences

These tests use hypothesis for property-based testing.
"""
