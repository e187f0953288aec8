"""
AI Recommendation Module

Provides LLM-driven directional recommendations for the analysis pass.
The model may only propose; RiskSanitizer and ExecutionDecider remain the hard authority.
"""
