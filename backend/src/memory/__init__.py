"""Learned wholesale-name -> product bindings."""
