"""LashDiary booking and availability engine"""
