"""Seasonal pickup billing service"""
