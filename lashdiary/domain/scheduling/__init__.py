"""Scheduling domain - availability, reservations and booking lifecycle"""
