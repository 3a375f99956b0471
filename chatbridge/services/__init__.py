"""Business logic services"""
