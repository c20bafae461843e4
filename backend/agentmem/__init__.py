"""
agentmem - hybrid memory search for an AI messaging bridge
"""
