"""
optimizer.py
~~~~~~~~~~~~

Adam moment accumulators for a single parameter tensor.
"""

import numpy as np

BETA1 = 0.9
BETA2 = 0.999
EPSILON = 1e-8


class AdamState:
    """
    First and second moment estimates shadowing one parameter array.

    The step counter lives in the owning layer so that every parameter of
    the layer shares one bias-correction schedule.
    """

    def __init__(self, shape):
        self.m = np.zeros(shape)
        self.v = np.zeros(shape)

    def step(
        self,
        param: np.ndarray,
        grad: np.ndarray,
        t: int,
        learning_rate: float
    ) -> None:
        """
        Apply one Adam update to `param` in place.

        Args:
            param: Parameter array, updated in place
            grad: Gradient of the loss with respect to `param`
            t: 1-based step count of the owning layer
            learning_rate: Step size
        """
        self.m *= BETA1
        self.m += (1 - BETA1) * grad
        self.v *= BETA2
        self.v += (1 - BETA2) * grad * grad

        m_hat = self.m / (1 - BETA1 ** t)
        v_hat = self.v / (1 - BETA2 ** t)
        param -= learning_rate * m_hat / (np.sqrt(v_hat) + EPSILON)
