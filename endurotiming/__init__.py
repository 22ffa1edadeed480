"""EnduroTiming: stage times, standings replay and live simulation for enduro rallies."""
