"""
Code used to simulate EC fans, for testing. Uses the 'ecmodbus' module.

The contents are:

        sim_fan.py - Simulates a single EC fan, including the firmware update sub-protocol.

"""
