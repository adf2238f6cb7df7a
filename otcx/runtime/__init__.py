"""Runtime: cancellable refresh scheduling and process wiring."""
