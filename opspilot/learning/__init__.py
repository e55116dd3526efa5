"""Learning - confidence evolution from outcomes and human edits"""
