"""Dashboard web application."""
