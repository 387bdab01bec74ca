"""Chat services"""
