"""
Broker agencies and general agencies.

Employers hire a broker agency; the broker may in turn assign a general agency
to the employer. A broker's default general agency is assigned automatically
when the broker is hired by an employer that has none.
"""
