from itertools import count

from shuttle.models import Stop, Vehicle

_sequence = count(1)


def make_stop(name=None, lat=0.0, lng=0.0, **kwargs):
    return Stop.objects.create(name=name or f"Stop {next(_sequence)}", lat=lat, lng=lng, **kwargs)


def make_vehicle(name=None, status=Vehicle.AVAILABLE, **kwargs):
    number = next(_sequence)
    kwargs.setdefault("plate_number", f"48 BG {number:03d}")
    kwargs.setdefault("lat", 1.0)
    kwargs.setdefault("lng", 1.0)
    return Vehicle.objects.create(name=name or f"Buggy {number}", status=status, **kwargs)
