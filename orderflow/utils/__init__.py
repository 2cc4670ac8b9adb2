"""Cross-cutting helpers: logging, retries, and per-key locks."""
