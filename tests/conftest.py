# tests/conftest.py
import os

# Set the TESTING environment variable before any tests are collected/run
os.environ["TESTING"] = "True"
