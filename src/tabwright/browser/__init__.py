"""Frames, pages, locators and the services that keep them in sync with the host."""
