"""Android device layer.

Thin wrappers around adb and the emulator binary: ``DeviceBridge`` issues
one adb command per verb, ``VirtualDeviceSupervisor`` owns the emulator
process from spawn to kill.
"""
