from .safety_layer import ActuatorSafetyLayer, clamp, sample_disturbance_torque

__all__ = ['ActuatorSafetyLayer', 'clamp', 'sample_disturbance_torque']
