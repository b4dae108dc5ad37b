"""Order-placing engines: grid, position lifecycle, fill sync, sweep."""
