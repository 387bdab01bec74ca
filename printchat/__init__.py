"""Print marketplace chat service"""
