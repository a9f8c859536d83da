from django import forms

from .dispatch import OPERATOR_STATUSES
from .models import Stop, Vehicle


class PositionForm(forms.Form):
    vehicle_id = forms.IntegerField(min_value=1)
    lat = forms.FloatField(min_value=-90, max_value=90)
    lng = forms.FloatField(min_value=-180, max_value=180)
    speed = forms.FloatField(required=False, min_value=0)  # km/h
    heading = forms.FloatField(required=False)
    correct = forms.NullBooleanField(required=False)


class StopForm(forms.ModelForm):
    class Meta:
        model = Stop
        fields = ('name', 'icon', 'lat', 'lng', 'geofence_radius', 'is_active')

    def clean(self):
        cleaned_data = super().clean()
        lat, lng = cleaned_data.get('lat'), cleaned_data.get('lng')
        if lat is not None and not -90 <= lat <= 90:
            self.add_error('lat', 'Latitude must be between -90 and 90.')
        if lng is not None and not -180 <= lng <= 180:
            self.add_error('lng', 'Longitude must be between -180 and 180.')
        return cleaned_data


class CallForm(forms.Form):
    stop_id = forms.IntegerField(min_value=1)


class CallActionForm(forms.Form):
    ASSIGN = 'assign'
    COMPLETE = 'complete'
    CANCEL = 'cancel'
    ACTION_CHOICES = [(ASSIGN, 'Assign'), (COMPLETE, 'Complete'), (CANCEL, 'Cancel')]

    action = forms.ChoiceField(choices=ACTION_CHOICES)
    vehicle_id = forms.IntegerField(required=False, min_value=1)
    dropoff_stop_id = forms.IntegerField(required=False, min_value=1)
    reason = forms.CharField(required=False, max_length=500)

    def clean(self):
        cleaned_data = super().clean()
        if cleaned_data.get('action') == self.ASSIGN and not cleaned_data.get('vehicle_id'):
            self.add_error('vehicle_id', 'A vehicle is required to assign a call.')
        return cleaned_data


class TaskActionForm(forms.Form):
    SET_DROPOFF = 'setDropoff'
    PICKUP = 'pickup'
    DROPOFF = 'dropoff'
    COMPLETE = 'complete'
    CANCEL = 'cancel'
    ACTION_CHOICES = [
        (SET_DROPOFF, 'Set dropoff stop'),
        (PICKUP, 'Pick up'),
        (DROPOFF, 'Drop off'),
        (COMPLETE, 'Complete'),
        (CANCEL, 'Cancel'),
    ]

    action = forms.ChoiceField(choices=ACTION_CHOICES)
    stop_id = forms.IntegerField(required=False, min_value=1)

    def clean(self):
        cleaned_data = super().clean()
        if cleaned_data.get('action') == self.SET_DROPOFF and not cleaned_data.get('stop_id'):
            self.add_error('stop_id', 'A dropoff stop is required.')
        return cleaned_data


class DeviceLinkForm(forms.Form):
    device_id = forms.IntegerField(min_value=1)


class VehicleStatusForm(forms.Form):
    status = forms.ChoiceField(
        choices=[choice for choice in Vehicle.STATUS_CHOICES if choice[0] in OPERATOR_STATUSES]
    )


class VisitQueryForm(forms.Form):
    start = forms.DateTimeField(required=False)
    end = forms.DateTimeField(required=False)
    vehicle_id = forms.IntegerField(required=False, min_value=1)
    stop_id = forms.IntegerField(required=False, min_value=1)
    stats = forms.BooleanField(required=False)
    limit = forms.IntegerField(required=False, min_value=1, max_value=5000)

    def clean(self):
        cleaned_data = super().clean()
        start, end = cleaned_data.get('start'), cleaned_data.get('end')
        if start and end and start > end:
            raise forms.ValidationError('start must not be after end.')
        return cleaned_data
