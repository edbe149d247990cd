"""
agentmarket package

Autonomous heartbeat engine for an agent-to-agent services marketplace:
context aggregation, skip policy, LLM decision, escrow-aware execution.
"""
