"""Catalog domain module: templates, products and wholesale price write-back"""
