"""GraphQL document used to page through a store's customers."""
from __future__ import annotations

_ADDRESS_FIELDS = """
    address1
    address2
    city
    country
    countryCodeV2
    province
    provinceCode
    zip
    phone
    firstName
    lastName
    company
"""

CUSTOMERS_QUERY = f"""
query getCustomers($first: Int!, $after: String) {{
  customers(first: $first, after: $after) {{
    edges {{
      cursor
      node {{
        id
        firstName
        lastName
        displayName
        defaultEmailAddress {{ emailAddress }}
        defaultPhoneNumber {{ phoneNumber }}
        verifiedEmail
        state
        locale
        note
        tags
        createdAt
        updatedAt
        amountSpent {{ amount currencyCode }}
        numberOfOrders
        lifetimeDuration
        addresses {{ {_ADDRESS_FIELDS} }}
        defaultAddress {{ {_ADDRESS_FIELDS} }}
        lastOrder {{ id name createdAt }}
        productSubscriberStatus
        mergeable {{ isMergeable }}
        originalCreatedDate: metafield(key: "created_at", namespace: "magento") {{ value }}
        events(first: 5, reverse: true) {{
          nodes {{ action appTitle message }}
        }}
        orders(first: 5, reverse: true) {{
          nodes {{
            createdAt
            email
            id
            paymentGatewayNames
            customerAcceptsMarketing
            customer {{ displayName }}
            discountCode
            displayFinancialStatus
            displayFulfillmentStatus
            lineItems(first: 20) {{ nodes {{ id name quantity }} }}
            returns(first: 20) {{ nodes {{ id name status totalQuantity }} }}
            shippingAddress {{
              address1
              address2
              city
              country
              countryCodeV2
              company
              formattedArea
            }}
            totalPriceSet {{ shopMoney {{ amount currencyCode }} }}
          }}
        }}
        statistics {{ predictedSpendTier rfmGroup }}
      }}
    }}
    pageInfo {{
      hasNextPage
      endCursor
    }}
  }}
}}
"""
