"""Tests for toolbridge."""
